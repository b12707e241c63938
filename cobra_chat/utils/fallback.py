from typing import Awaitable, Callable, Generic, Optional, TypeVar

from cobra_chat.utils.logger import logger

T = TypeVar("T")


class FallbackChain(Generic[T]):
    """Primary + fallback pair sharing one async call signature.

    The fallback is only consulted when the primary raises. The failure is
    logged and an optional hook is notified so degradations stay observable.
    """

    def __init__(
        self,
        name: str,
        primary: Callable[..., Awaitable[T]],
        fallback: Callable[..., Awaitable[T]],
        on_fallback: Optional[Callable[[Exception], None]] = None,
    ):
        self.name = name
        self.primary = primary
        self.fallback = fallback
        self.on_fallback = on_fallback
        self.fallback_count = 0

    async def __call__(self, *args, **kwargs) -> T:
        try:
            return await self.primary(*args, **kwargs)
        except Exception as e:
            self.fallback_count += 1
            logger.warning(f"{self.name}: primary failed ({type(e).__name__}: {e}), using fallback")
            if self.on_fallback:
                self.on_fallback(e)
            return await self.fallback(*args, **kwargs)
