from functools import wraps
from typing import Callable

from pydantic import BaseModel


def cached(
    key_builder: Callable[..., str],
    ttl_setting: str,
    model: type[BaseModel] | None = None,
):
    """
    Read-through caching for async service methods. The instance must expose
    ``cache`` (CacheLayer) and ``settings``; key_builder receives the method's
    args/kwargs without ``self``; ttl_setting names the Settings field holding
    the TTL.
    Example:
      @cached(lambda task_id, **kw: f"task:{task_id}", "cache_ttl_task", model=TaskRead)
      async def get_task(self, task_id): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            key = key_builder(*args, **kwargs)

            # loader closure calls the original function
            async def loader():
                value = await fn(self, *args, **kwargs)
                if value is None:
                    return None
                if hasattr(value, "model_dump"):
                    return value.model_dump(mode="json")
                return value

            ttl = getattr(self.settings, ttl_setting)
            value = await self.cache.get_or_load(key, loader=loader, ttl=ttl)
            if value is None or model is None:
                return value
            return model.model_validate(value)

        return wrapper

    return decorator


def expires(key_builder: Callable[..., str]):
    """Delete the key once the wrapped write has succeeded."""

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            result = await fn(self, *args, **kwargs)
            await self.cache.delete(key_builder(*args, **kwargs))
            return result

        return wrapper

    return decorator
