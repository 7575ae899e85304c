"""Create the analysis tables in the configured database.

Intended for local/dev environments; deployments can also set DECKMEMO_AUTO_CREATE_TABLES.
"""

import asyncio
import os
import sys

# Add the project root to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


async def init_tables() -> None:
  # Import after path setup so the script works when run directly.
  from deckmemo.config import get_database_settings
  from deckmemo.core.database import create_tables, dispose_engine

  if not get_database_settings().pg_dsn:
    print("Error: DECKMEMO_PG_DSN is not set.")
    sys.exit(1)

  try:
    await create_tables()
    print("Analysis tables are in place.")
  finally:
    await dispose_engine()


if __name__ == "__main__":
  asyncio.run(init_tables())
