from referral_pricing.database.base import Base
from referral_pricing.database.engine import build_engine, create_schema, engine
from referral_pricing.database.session import SessionLocal, build_session_factory

__all__ = ["Base", "SessionLocal", "build_engine", "build_session_factory", "create_schema", "engine"]
