from sqlalchemy import URL, make_url


def get_async_db_url(url: str | URL) -> URL:
    """
    Swap a plain database URL for its asyncio driver (`aiosqlite` / `asyncpg`).
    """
    parsed = make_url(url)
    if parsed.drivername == "sqlite":
        return parsed.set(drivername="sqlite+aiosqlite")
    if parsed.drivername in ("postgresql", "postgres"):
        return parsed.set(drivername="postgresql+asyncpg")
    return parsed
