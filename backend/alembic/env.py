import asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from alembic import context
from custody.config import settings
from custody.database import Base
from custody.logging_setup import configure_logging
import custody.models  # noqa: F401 - register all models

config = context.config
configure_logging()

target_metadata = Base.metadata

# Settings already rewrites postgresql:// to the asyncpg driver
database_url = settings.DATABASE_URL


def run_migrations_offline():
    context.configure(
        url=database_url,
        target_metadata=target_metadata,
        literal_binds=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online():
    engine = create_async_engine(database_url)
    async with engine.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await engine.dispose()

if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
