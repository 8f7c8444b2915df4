"""
Transparent client instrumentation.

Wraps an arbitrary provider client so that every method call records a usage
event. Nested objects (``client.chat.completions``) are wrapped lazily when
accessed. Responses are returned unchanged; only a failing record (for
example a budget kill) replaces the response with an exception. Calls from
sync clients are recorded on a background event loop owned by the Guard.
"""

import asyncio
import functools
import inspect
import logging
import threading
import weakref
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from ..core.token_counter import extract_call_usage, model_from_request

logger = logging.getLogger(__name__)

# Values returned as-is instead of being proxied
PLAIN_TYPES = (
    str, bytes, bytearray, int, float, complex, bool, type(None),
    list, tuple, dict, set, frozenset,
)

MetadataExtractor = Callable[[Tuple[Any, ...], Dict[str, Any]], Optional[Mapping[str, Optional[str]]]]
RecordFn = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class WrapOptions:
    """Attribution applied to calls made through a wrapped client.

    ``metadata_extractor`` receives the call's ``(args, kwargs)`` and may
    return ``user_id``/``feature`` values that override the static ones.
    """
    user_id: Optional[str] = None
    feature: Optional[str] = None
    metadata_extractor: Optional[MetadataExtractor] = None


class ProxyCache:
    """Proxies keyed by wrapped object identity and options.

    Entries are weak: a proxy is dropped once nothing outside the cache holds
    it. A live proxy keeps its target alive, so an ``id`` is never reused
    while its entry exists.
    """

    def __init__(self):
        self._entries: "weakref.WeakValueDictionary[Tuple[int, WrapOptions], GuardedClient]" = (
            weakref.WeakValueDictionary()
        )
        self._lock = threading.Lock()

    def get_or_create(self, target: Any, options: WrapOptions, factory: Callable[[], "GuardedClient"]) -> "GuardedClient":
        key = (id(target), options)
        with self._lock:
            proxy = self._entries.get(key)
            if proxy is None:
                proxy = factory()
                self._entries[key] = proxy
            return proxy

    def __len__(self) -> int:
        return len(self._entries)


class BackgroundLoop:
    """Long-lived event loop on a daemon thread.

    Synchronous wrappers submit ``record`` coroutines here and block on the
    result, so sync clients are metered the same way whether or not the
    calling thread already runs an event loop.
    """

    def __init__(self, name: str = "llm-cost-guard"):
        self._name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def _ensure_started(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None:
                loop = asyncio.new_event_loop()
                thread = threading.Thread(target=loop.run_forever, name=self._name, daemon=True)
                thread.start()
                self._loop, self._thread = loop, thread
                logger.debug("Started background loop thread %s", self._name)
            return self._loop

    def run(self, coro: Awaitable[Any]) -> Any:
        """Run a coroutine on the background loop and wait for its result."""
        loop = self._ensure_started()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            coro.close()
            raise RuntimeError("A synchronous client call cannot be recorded from the guard's own loop thread")
        return asyncio.run_coroutine_threadsafe(coro, loop).result()

    @property
    def running(self) -> bool:
        return self._loop is not None

    def close(self) -> None:
        """Stop the loop thread. A later ``run`` starts a fresh one."""
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = self._thread = None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        thread.join()
        loop.close()


class GuardedClient:
    """Attribute-forwarding proxy that meters method calls.

    Calls, context managers (sync and async), iteration and ``len`` are
    forwarded to the wrapped object; entering a context that returns the
    wrapped object yields the proxy instead.
    """

    __slots__ = ("_target", "_record", "_options", "_cache", "_loop", "__weakref__")

    def __init__(self, target: Any, record: RecordFn, options: WrapOptions, cache: ProxyCache, loop: BackgroundLoop):
        object.__setattr__(self, "_target", target)
        object.__setattr__(self, "_record", record)
        object.__setattr__(self, "_options", options)
        object.__setattr__(self, "_cache", cache)
        object.__setattr__(self, "_loop", loop)

    def __getattr__(self, name: str) -> Any:
        value = getattr(self._target, name)
        if isinstance(value, PLAIN_TYPES) or isinstance(value, type):
            return value
        if callable(value):
            return _metered(value, self._record, self._options, self._loop)
        return wrap_client(self._record, value, self._options, self._cache, self._loop)

    def __setattr__(self, name: str, value: Any) -> None:
        setattr(self._target, name, value)

    def __delattr__(self, name: str) -> None:
        delattr(self._target, name)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return _metered(self._target, self._record, self._options, self._loop)(*args, **kwargs)

    def __enter__(self) -> Any:
        entered = self._target.__enter__()
        return self if entered is self._target else entered

    def __exit__(self, *exc_info: Any) -> Any:
        return self._target.__exit__(*exc_info)

    async def __aenter__(self) -> Any:
        entered = await self._target.__aenter__()
        return self if entered is self._target else entered

    async def __aexit__(self, *exc_info: Any) -> Any:
        return await self._target.__aexit__(*exc_info)

    def __iter__(self):
        return iter(self._target)

    def __len__(self) -> int:
        return len(self._target)

    def __bool__(self) -> bool:
        return bool(self._target)

    def __dir__(self):
        return dir(self._target)

    def __repr__(self) -> str:
        return f"GuardedClient({self._target!r})"

    @property
    def __wrapped__(self) -> Any:
        return self._target


def wrap_client(
    record: RecordFn,
    client: Any,
    options: Optional[WrapOptions] = None,
    cache: Optional[ProxyCache] = None,
    loop: Optional[BackgroundLoop] = None,
) -> GuardedClient:
    """Wrap ``client`` so each method call is passed to ``record``.

    Args:
        record: Coroutine function with the ``Guard.record`` signature
        client: Provider client or any object exposing call-shaped methods
        options: Static or per-call attribution
        cache: Proxy cache shared by every wrap made for one Guard
        loop: Background loop that records calls made by sync clients

    Returns:
        GuardedClient proxy of ``client``
    """
    options = options or WrapOptions()
    cache = cache if cache is not None else ProxyCache()
    loop = loop if loop is not None else BackgroundLoop()
    if isinstance(client, GuardedClient):
        return client
    return cache.get_or_create(client, options, lambda: GuardedClient(client, record, options, cache, loop))


def _record_kwargs(result: Any, args: Tuple[Any, ...], kwargs: Dict[str, Any], options: WrapOptions) -> Optional[Dict[str, Any]]:
    call_usage = extract_call_usage(result, model_from_request(args, kwargs))
    if call_usage is None:
        logger.debug("No usage found in %s result", type(result).__name__)
        return None

    extracted: Mapping[str, Optional[str]] = {}
    if options.metadata_extractor is not None:
        extracted = options.metadata_extractor(args, kwargs) or {}

    return {
        "model": call_usage.model,
        "input_tokens": call_usage.usage.input_tokens,
        "output_tokens": call_usage.usage.output_tokens,
        "user_id": extracted.get("user_id") or options.user_id,
        "feature": extracted.get("feature") or options.feature,
    }


def _metered(func: Callable[..., Any], record: RecordFn, options: WrapOptions, loop: BackgroundLoop) -> Callable[..., Any]:
    async def finish(pending: Awaitable[Any], args, kwargs) -> Any:
        result = await pending
        request = _record_kwargs(result, args, kwargs, options)
        if request is not None:
            await record(**request)
        return result

    @functools.wraps(func)
    def metered(*args: Any, **kwargs: Any) -> Any:
        result = func(*args, **kwargs)
        if inspect.isawaitable(result):
            return finish(result, args, kwargs)

        request = _record_kwargs(result, args, kwargs, options)
        if request is not None:
            loop.run(record(**request))
        return result

    return metered
