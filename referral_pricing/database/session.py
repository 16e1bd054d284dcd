from sqlalchemy.orm import sessionmaker

from referral_pricing.database.engine import engine


def build_session_factory(bind):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
    )


SessionLocal = build_session_factory(engine)
