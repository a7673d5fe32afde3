import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection

from school_events.core.database import Base, engine

# Import models so their tables are registered on Base.metadata
from school_events.modules.events import models as events_models  # noqa: F401
from school_events.modules.notifications import models as notifications_models  # noqa: F401
from school_events.modules.payments import models as payments_models  # noqa: F401
from school_events.modules.students import models as students_models  # noqa: F401
from school_events.modules.users import models as users_models  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=engine.url.render_as_string(hide_password=False),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    async with engine.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
