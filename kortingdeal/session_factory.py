from sqlalchemy.orm import Session

from kortingdeal.db import SessionLocal


def session_factory() -> Session:
    return SessionLocal()
