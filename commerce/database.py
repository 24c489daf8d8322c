from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()


def make_engine(database_url: str):
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {}
    )


def make_session_factory(engine):
    # rows are handed out as dicts after commit, nothing needs to reload
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
