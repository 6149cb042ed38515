"""Async SQLAlchemy engine & session — supports SQLite and PostgreSQL."""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from leadflow.config import get_settings

settings = get_settings()

# SQLite needs connect_args for async; PostgreSQL uses pool_size
if settings.is_sqlite:
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=10,
    )

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@event.listens_for(Base, "init", propagate=True)
def _apply_defaults(target, args, kwargs):
    """Apply Column defaults at Python level right after __init__.

    Rules and tests are evaluated before they are flushed, so priority,
    enabled and status must already hold their defaults.
    """
    from sqlalchemy import inspect as sa_inspect

    try:
        mapper = sa_inspect(type(target))
    except Exception:
        return
    for col_attr in mapper.column_attrs:
        key = col_attr.key
        if key in kwargs:
            continue
        if getattr(target, key, None) is not None:
            continue
        default = col_attr.columns[0].default
        if default is None:
            continue
        arg = default.arg
        if callable(arg):
            try:
                setattr(target, key, arg())
            except TypeError:
                # SQLAlchemy wraps zero-arg callables to accept a context
                setattr(target, key, arg(None))
        else:
            setattr(target, key, arg)


async def get_db():
    async with async_session() as session:
        yield session
