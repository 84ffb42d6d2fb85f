from functools import wraps
from typing import Callable


def cached_query(key_builder: Callable[..., str]):
    """
    Decorator for async service methods whose owner exposes ``self.cache``
    (a QueryCache). key_builder receives the same args/kwargs minus self.
    Example:
      @cached_query(lambda db, filters, viewer: f"tasks:search:{viewer.id}")
      async def list_tasks(self, db, filters, viewer): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            key = key_builder(*args, **kwargs)

            # loader closure calls the original method
            async def loader():
                value = await fn(self, *args, **kwargs)
                if hasattr(value, "model_dump"):
                    return value.model_dump(mode="json", by_alias=True)
                return value

            return await self.cache.get_or_load(key, loader)

        return wrapper

    return decorator

