from typing import Iterable

import structlog
from redis.exceptions import RedisError

from dropbin.exceptions import StorageUnavailable
from dropbin.models.primitives import Token
from dropbin.repos.base_repo import Repo
from dropbin.utils.redis_utils import close_aioredis, get_aioredis


class TokenRepo(Repo):
    """
    The authority deciding whether an admission token is acceptable.
    """

    store_name = "token authority"

    async def is_token_valid(
        self, log: structlog.stdlib.BoundLogger, token: Token
    ) -> bool:
        if not token:
            return False
        try:
            return await self._call(log, "is_token_valid", self._is_token_valid(token))
        except StorageUnavailable as e:
            # an unreachable authority rejects every token
            log.error("Token authority unavailable", exc_info=e)
            return False

    async def _is_token_valid(self, token: Token) -> bool:
        raise NotImplementedError


class AllowAllTokenRepo(TokenRepo):
    async def _is_token_valid(self, token: Token) -> bool:
        return True


class StaticTokenRepo(TokenRepo):
    def __init__(self, tokens: Iterable[Token], *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.tokens = frozenset(tokens)

    async def _is_token_valid(self, token: Token) -> bool:
        return token in self.tokens


class RedisTokenRepo(TokenRepo):
    """
    Tokens are valid while a `bot:tokens:<token>` key exists.
    """

    storage_errors = TokenRepo.storage_errors + (RedisError,)

    def __init__(self, *args, key_prefix: str = "bot:tokens", **kwargs):
        super().__init__(*args, **kwargs)
        self.key_prefix = key_prefix
        self.redis = get_aioredis()

    async def close(self):
        await close_aioredis()

    async def _is_token_valid(self, token: Token) -> bool:
        return bool(await self.redis.exists(f"{self.key_prefix}:{token}"))
