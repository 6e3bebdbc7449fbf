# config.py
import os
import warnings
from functools import lru_cache

from autogen_ext.models.openai import OpenAIChatCompletionClient
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./slot_swap.db")

# Token signing
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    warnings.warn("SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2)
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

# Swap transactions: attempts before contention is reported as a conflict
SWAP_TX_MAX_ATTEMPTS = int(os.getenv("SWAP_TX_MAX_ATTEMPTS", 3))
SWAP_TX_RETRY_DELAY = float(os.getenv("SWAP_TX_RETRY_DELAY", 0.05))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Advisory text generation
AI_MODEL = os.getenv("AI_MODEL", "gemini-2.5-flash")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")


@lru_cache(maxsize=1)
def get_model_client():
    """Build the chat completion client on first use so the API can boot without a key."""
    return OpenAIChatCompletionClient(
        model=AI_MODEL,
        api_key=GEMINI_API_KEY,
    )
