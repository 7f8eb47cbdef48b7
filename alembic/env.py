from logging.config import fileConfig

from sqlalchemy.ext.asyncio import create_async_engine
from alembic import context

from marketauth.database import Base
from marketauth.config import settings
from marketauth.models import User, UserSecurity  # noqa: F401  (registers tables on Base.metadata)


# Alembic configuration
config = context.config

# Set up logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Link target metadata for autogenerate support
target_metadata = Base.metadata


def get_url() -> str:
    return settings.database_url


async def run_migrations_online():
    """Run migrations in 'online' mode using AsyncEngine."""
    connectable = create_async_engine(get_url())

    async with connectable.connect() as connection:
        def do_run_migrations(sync_connection):
            context.configure(
                connection=sync_connection,
                target_metadata=target_metadata,
                compare_type=True,
                render_as_batch=sync_connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()

        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    import asyncio

    asyncio.run(run_migrations_online())
