import os

APP_NAME = "Plants for Life"

# Mongo
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
# Multi-document transactions need a replica set; standalone servers leave this off
DATABASE_TRANSACTIONS = os.getenv("DATABASE_TRANSACTIONS", "false").lower() in ("1", "true", "yes")

# Collections are namespaced per deployment
APP_ID = os.getenv("APP_ID", "default-plant-store")

# JWT
SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

# User id promoted to admin at startup; registration never grants the role
ADMIN_UID = os.getenv("ADMIN_UID", "").strip()

RESTOCK_ON_CANCEL = os.getenv("RESTOCK_ON_CANCEL", "false").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
