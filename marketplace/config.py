import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Firebase Configuration
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
# Service account JSON; when unset the Application Default Credentials are used
GOOGLE_APPLICATION_CREDENTIALS = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")

# Frontend base URL for checkout redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# CORS - comma separated list of allowed origins
CORS_ORIGINS = [
    origin.strip().rstrip("/")
    for origin in os.getenv("CORS_ORIGINS", FRONTEND_URL).split(",")
    if origin.strip()
]

# Stripe (card checkout)
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

# Asaas (boleto / PIX) - default to sandbox for safety
ASAAS_API_KEY = os.getenv("ASAAS_API_KEY")
ASAAS_API_URL = os.getenv("ASAAS_API_URL", "https://sandbox.asaas.com/api/v3")
# Token configured on the Asaas webhook; sent back in the asaas-access-token header
ASAAS_WEBHOOK_TOKEN = os.getenv("ASAAS_WEBHOOK_TOKEN")

# Timeouts (seconds)
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))
STORE_READ_TIMEOUT_SECONDS = float(os.getenv("STORE_READ_TIMEOUT_SECONDS", "3"))
STORE_WRITE_TIMEOUT_SECONDS = float(os.getenv("STORE_WRITE_TIMEOUT_SECONDS", "10"))

# Rate limiting
WEBHOOK_RATE_LIMIT_PER_MINUTE = int(os.getenv("WEBHOOK_RATE_LIMIT_PER_MINUTE", "100"))
REDIS_URL = os.getenv("REDIS_URL")
