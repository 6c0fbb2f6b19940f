"""Environment-driven configuration."""

import os

# Storage
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./focuswrite.db")
SQL_DEBUG = os.getenv("SQL_DEBUG", "false").lower() == "true"

# Bearer tokens issued by the external identity provider
JWT_SECRET = os.getenv("FOCUSWRITE_JWT_SECRET", "change-me-in-production")
JWT_ALGORITHM = os.getenv("FOCUSWRITE_JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

# HTTP surface
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
