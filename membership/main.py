import logging
import os

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from membership import app_context
from membership.app.members.config import load_membership_config
from membership.app.routes.members import router as members_router

load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("membership")

CONFIG = load_membership_config()


def get_conn():
    return psycopg2.connect(**CONFIG.database.dsn_kwargs())


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Membership API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(members_router)

logger.info(
    "Membership API ready entitlement_mode=%s billing_configured=%s",
    CONFIG.entitlement_mode.value,
    CONFIG.billing_configured,
)
