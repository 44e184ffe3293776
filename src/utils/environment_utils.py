from dotenv import load_dotenv
import os

# Utils
from utils.log_utils import LogUtil

"""
Utility class for environment variables
"""
class EnvironmentUtils:
    def __init__(self, log_util: LogUtil):

        # Load environment variables
        load_dotenv()

        # Initialize logger
        self.log_util = log_util

        # Environment variables
        self.env_variables = {
            "APP_ENV": os.getenv("APP_ENV", "production"),
            "HOST": os.getenv("HOST", "0.0.0.0"),
            "PORT": int(os.getenv("PORT", "8018")),
            "LOKI_URL": os.getenv("LOKI_URL", ""),
            # Mongo: MONGO_URI wins over the individual connection parts
            "MONGO_URI": os.getenv("MONGO_URI", ""),
            "MONGO_USERNAME": os.getenv("MONGO_USERNAME", ""),
            "MONGO_PASSWORD": os.getenv("MONGO_PASSWORD", ""),
            "MONGO_AUTH_SOURCE": os.getenv("MONGO_AUTH_SOURCE", "admin"),
            "MONGO_HOST": os.getenv("MONGO_HOST", "localhost"),
            "MONGO_PORT": int(os.getenv("MONGO_PORT", "27017")),
            "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "listing_intake"),
            # Extraction model
            "OPENAI_API_KEY": os.getenv("OPENAI_API_KEY", ""),
            "OPENAI_BASE_URL": os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            "EXTRACTION_MODEL": os.getenv("EXTRACTION_MODEL", "gpt-4o-mini"),
            "EXTRACTION_MAX_MESSAGE_LENGTH": int(os.getenv("EXTRACTION_MAX_MESSAGE_LENGTH", "2400")),
            "EXTRACTION_MAX_LISTINGS": int(os.getenv("EXTRACTION_MAX_LISTINGS", "6")),
            "EXTRACTION_TIMEOUT_SECONDS": float(os.getenv("EXTRACTION_TIMEOUT_SECONDS", "30")),
            # Worker
            "WORKER_BATCH_SIZE": int(os.getenv("WORKER_BATCH_SIZE", "5")),
            "WORKER_MAX_ATTEMPTS": int(os.getenv("WORKER_MAX_ATTEMPTS", "3")),
            "WORKER_CLAIM_TIMEOUT_SECONDS": int(os.getenv("WORKER_CLAIM_TIMEOUT_SECONDS", "300")),
            "WORKER_BASE_URL": os.getenv("WORKER_BASE_URL", "").strip(),
            "WORKER_TRIGGER_WINDOW_SECONDS": float(os.getenv("WORKER_TRIGGER_WINDOW_SECONDS", "30")),
            "WORKER_TRIGGER_TIMEOUT_SECONDS": float(os.getenv("WORKER_TRIGGER_TIMEOUT_SECONDS", "10")),
            # Secrets
            "BACKEND_API_KEY": os.getenv("BACKEND_API_KEY", ""),
            "WHATSAPP_APP_SECRET": os.getenv("WHATSAPP_APP_SECRET", ""),
            "WHATSAPP_VERIFY_TOKEN": os.getenv("WHATSAPP_VERIFY_TOKEN", ""),
            "DEBUG": os.getenv("DEBUG", "false"),
        }

    def get_env_variable(self, variable_name: str) -> str | int | float:
        if variable_name not in self.env_variables:
            self.log_util.error(service_name="EnvironmentUtils", message=f"Environment variable {variable_name} not found")
            raise ValueError(f"Environment variable {variable_name} not found")
        return self.env_variables[variable_name]
