import typing as t
from bevy import Inject, auto_inject, get_container
from contextlib import suppress

__all__ = ["Depends", "Inject", "depends", "get_container"]


class Depends:
    """Thin facade over the bevy container.

    Process-wide services (cache store, request coordinator, database client,
    data session) are registered here once per session and looked up by type.
    """

    @staticmethod
    def inject(func: t.Callable[..., t.Any]) -> t.Callable[..., t.Any]:
        """Decorator to inject dependencies into a function."""
        return t.cast("t.Callable[..., t.Any]", auto_inject(func))

    @staticmethod
    def set(class_: t.Any, instance: t.Any = None, module: str | None = None) -> t.Any:
        """Register a class/instance in the dependency container.

        Returns the instance that was registered.
        """
        if instance is None:
            instance = class_()
        if module:
            get_container().add(class_, instance, qualifier=module)
        else:
            get_container().add(class_, instance)
        return instance

    @staticmethod
    def get_sync(category: t.Any, module: str | None = None) -> t.Any:
        """Get a registered dependency instance."""
        if module:
            result = get_container().get(category, qualifier=module)
        else:
            result = get_container().get(category)
        if isinstance(result, tuple) and len(result) == 1:
            return result[0]
        return result

    async def get(self, category: t.Any, module: str | None = None) -> t.Any:
        """Async alias of ``get_sync`` for call sites that already await."""
        return self.get_sync(category, module)

    @staticmethod
    def clear() -> None:
        """Reset the container (testing helper).

        Bevy does not expose one stable reset API across releases, so the
        known variants are tried in order.
        """
        container = get_container()
        with suppress(AttributeError):
            container.reset()  # type: ignore[attr-defined]
            return
        with suppress(AttributeError):
            container.clear()  # type: ignore[attr-defined]
            return
        for attr in ("_instances", "_factories", "_qualifier_map"):
            store = getattr(container, attr, None)
            if store is not None and hasattr(store, "clear"):
                store.clear()


depends = Depends()
