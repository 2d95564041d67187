import redis.asyncio as redis


def build_redis_client(host: str, port: int, db: int = 0) -> redis.Redis:
    """
    Create an asynchronous Redis client backed by its own connection pool.

    decode_responses=True makes values come back as UTF-8 strings.
    """
    pool = redis.ConnectionPool(
        host=host,
        port=port,
        db=db,
        decode_responses=True
    )
    return redis.Redis(connection_pool=pool)
