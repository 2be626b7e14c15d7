import os

# Test settings must be in place before any module reads get_settings().
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["QUEUE_ENABLED"] = "false"
os.environ["PROVIDER_RETRY_BASE_DELAY"] = "0"
os.environ["JOB_RETRY_BASE_DELAY"] = "0"
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("ENCRYPTION_KEY", "paidin-test-encryption-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_paidin")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_paidin")
os.environ.setdefault("STRIKE_WEBHOOK_SECRET", "strike-webhook-secret")
os.environ.setdefault("BREEZ_WEBHOOK_SECRET", "breez-webhook-secret")

from dotenv import load_dotenv

# Optional developer overrides (e.g. sandbox credentials) for local runs
env_test_path = os.path.join(os.path.dirname(__file__), ".env.test")
if os.path.exists(env_test_path):
    load_dotenv(env_test_path, override=False)

from libs.common.config import get_settings
from libs.common.encryption import get_fernet

# Clear cached settings to reload with the test env vars
get_settings.cache_clear()
get_fernet.cache_clear()
