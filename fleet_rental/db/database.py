from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fleet_rental.config.settings import Settings

_sessionmakers: dict[str, sessionmaker] = {}


def get_engine(database_url: str):
    return create_engine(database_url, pool_pre_ping=True, future=True)


def get_sessionmaker(settings: Settings) -> sessionmaker:
    # one engine (and connection pool) per database url
    if settings.database_url not in _sessionmakers:
        engine = get_engine(settings.database_url)
        _sessionmakers[settings.database_url] = sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )
    return _sessionmakers[settings.database_url]
