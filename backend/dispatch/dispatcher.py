"""Observer-style signal dispatcher.

Receivers connect to a Signal, optionally filtered by sender, and are
called with ``signal``, ``sender`` and the keyword arguments given to
``send()``:

    saved = Signal()

    @receiver(saved)
    def on_saved(sender, **kwargs):
        ...

    saved.send(sender=Model, instance=obj)

Receivers are held through weak references by default, so connecting a
bound method does not keep its instance alive.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import weakref
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

logger = logging.getLogger("dispatch")


def _make_id(target: Any) -> int | tuple[int, int]:
    if hasattr(target, "__func__"):
        return (id(target.__self__), id(target.__func__))
    return id(target)


NONE_ID = _make_id(None)

# Cached for senders that have no receivers at all.
NO_RECEIVERS = object()


def _accepts_kwargs(func: Callable) -> bool:
    try:
        parameters = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return True
    return any(p.kind == p.VAR_KEYWORD for p in parameters)


def _is_async(func: Callable) -> bool:
    if inspect.iscoroutinefunction(func):
        return True
    call = getattr(func, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


def _run_coroutine(factory: Callable[[], Any]) -> Any:
    """Run a coroutine to completion from synchronous code.

    Uses a private event loop on a helper thread when the calling thread
    already runs one.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(factory())
    with ThreadPoolExecutor(max_workers=1) as executor:
        return executor.submit(lambda: asyncio.run(factory())).result()


class Signal:
    """Base class for all signals.

    Attributes:
        receivers: List of ``(lookup_key, receiver, sender_ref, is_async)``.
        use_caching: Cache live receivers per sender. Only useful for
            signals sent many times with a small set of senders.
        name: Optional label used in log and repr output.
    """

    def __init__(self, use_caching: bool = False, name: str | None = None):
        self.receivers: list[tuple[tuple, Any, Any, bool]] = []
        self.lock = threading.Lock()
        self.use_caching = use_caching
        self.name = name
        # Keyed weakly by sender so cached entries vanish with the sender.
        self.sender_receivers_cache: weakref.WeakKeyDictionary | dict = (
            weakref.WeakKeyDictionary() if use_caching else {}
        )
        self._dead_receivers = False

    def __repr__(self) -> str:
        label = f" {self.name!r}" if self.name else ""
        return f"<{type(self).__name__}{label} receivers={len(self.receivers)}>"

    def connect(
        self,
        receiver: Callable,
        sender: Any = None,
        weak: bool = True,
        dispatch_uid: Any = None,
    ) -> None:
        """Connect a receiver to this signal.

        Args:
            receiver: Callable taking ``sender`` and ``**kwargs``. May be a
                coroutine function; it is awaited on dispatch.
            sender: Only deliver signals sent by this object. ``None``
                receives from every sender.
            weak: Hold the receiver through a weak reference.
            dispatch_uid: Identifier for the connection, used instead of
                the receiver's identity so a receiver defined repeatedly
                (e.g. on module reload) is only connected once.

        Raises:
            TypeError: If receiver is not callable.
            ValueError: If receiver does not accept keyword arguments.
        """
        if not callable(receiver):
            raise TypeError(f"Signal receivers must be callable, got {receiver!r}")
        if not _accepts_kwargs(receiver):
            raise ValueError("Signal receivers must accept keyword arguments (**kwargs).")

        if dispatch_uid:
            lookup_key = (dispatch_uid, _make_id(sender))
        else:
            lookup_key = (_make_id(receiver), _make_id(sender))

        is_async = _is_async(receiver)

        if weak:
            ref: type[weakref.ref] = weakref.ref
            receiver_object = receiver
            if hasattr(receiver, "__self__") and hasattr(receiver, "__func__"):
                ref = weakref.WeakMethod
                receiver_object = receiver.__self__
            receiver = ref(receiver)
            weakref.finalize(receiver_object, self._remove_receiver)

        try:
            sender_ref = weakref.ref(sender, self._remove_receiver) if sender is not None else None
        except TypeError:
            sender_ref = None

        with self.lock:
            self._clear_dead_receivers()
            if not any(r_key == lookup_key for r_key, _, _, _ in self.receivers):
                self.receivers.append((lookup_key, receiver, sender_ref, is_async))
            self.sender_receivers_cache.clear()

    def disconnect(
        self,
        receiver: Callable | None = None,
        sender: Any = None,
        dispatch_uid: Any = None,
    ) -> bool:
        """Disconnect a receiver from this signal.

        The receiver is matched the same way connect() keyed it, so pass
        the same ``sender`` or ``dispatch_uid`` used there.

        Returns:
            True if a receiver was disconnected.
        """
        if dispatch_uid:
            lookup_key = (dispatch_uid, _make_id(sender))
        else:
            lookup_key = (_make_id(receiver), _make_id(sender))

        disconnected = False
        with self.lock:
            self._clear_dead_receivers()
            for index, (r_key, _, _, _) in enumerate(self.receivers):
                if r_key == lookup_key:
                    disconnected = True
                    del self.receivers[index]
                    break
            self.sender_receivers_cache.clear()
        if disconnected:
            logger.debug("Disconnected receiver %s from %r", lookup_key[0], self)
        return disconnected

    def has_listeners(self, sender: Any = None) -> bool:
        sync_receivers, async_receivers = self._live_receivers(sender)
        return bool(sync_receivers) or bool(async_receivers)

    def _no_receivers(self, sender: Any) -> bool:
        if not self.receivers:
            return True
        return self.use_caching and self._cache_get(sender) is NO_RECEIVERS

    def send(self, sender: Any, **named: Any) -> list[tuple[Callable, Any]]:
        """Send signal from sender to all connected receivers.

        A receiver raising an exception stops dispatch and the exception
        propagates; use send_robust() to keep going.

        Returns:
            List of ``(receiver, response)`` tuples, sync receivers first.
        """
        if self._no_receivers(sender):
            return []

        responses = []
        sync_receivers, async_receivers = self._live_receivers(sender)
        for receiver in sync_receivers:
            response = receiver(signal=self, sender=sender, **named)
            responses.append((receiver, response))

        if async_receivers:
            async def gather_async():
                results = await asyncio.gather(
                    *(r(signal=self, sender=sender, **named) for r in async_receivers)
                )
                return list(zip(async_receivers, results))

            responses.extend(_run_coroutine(gather_async))
        return responses

    def send_robust(self, sender: Any, **named: Any) -> list[tuple[Callable, Any]]:
        """Send signal, catching errors raised by receivers.

        Each receiver's Exception is logged and returned as its response
        instead of interrupting dispatch.
        """
        if self._no_receivers(sender):
            return []

        responses = []
        sync_receivers, async_receivers = self._live_receivers(sender)
        for receiver in sync_receivers:
            try:
                response = receiver(signal=self, sender=sender, **named)
            except Exception as err:
                self._log_robust_failure(receiver, err)
                responses.append((receiver, err))
            else:
                responses.append((receiver, response))

        if async_receivers:
            async def gather_async():
                results = await asyncio.gather(
                    *(self._call_async_robust(r, sender, named) for r in async_receivers)
                )
                return list(zip(async_receivers, results))

            responses.extend(_run_coroutine(gather_async))
        return responses

    async def asend(self, sender: Any, **named: Any) -> list[tuple[Callable, Any]]:
        """Coroutine version of send(). Async receivers run concurrently."""
        if self._no_receivers(sender):
            return []

        sync_receivers, async_receivers = self._live_receivers(sender)
        responses = [
            (receiver, receiver(signal=self, sender=sender, **named))
            for receiver in sync_receivers
        ]
        results = await asyncio.gather(
            *(r(signal=self, sender=sender, **named) for r in async_receivers)
        )
        responses.extend(zip(async_receivers, results))
        return responses

    async def asend_robust(self, sender: Any, **named: Any) -> list[tuple[Callable, Any]]:
        """Coroutine version of send_robust()."""
        if self._no_receivers(sender):
            return []

        sync_receivers, async_receivers = self._live_receivers(sender)
        responses = []
        for receiver in sync_receivers:
            try:
                response = receiver(signal=self, sender=sender, **named)
            except Exception as err:
                self._log_robust_failure(receiver, err)
                responses.append((receiver, err))
            else:
                responses.append((receiver, response))

        results = await asyncio.gather(
            *(self._call_async_robust(r, sender, named) for r in async_receivers)
        )
        responses.extend(zip(async_receivers, results))
        return responses

    async def _call_async_robust(self, receiver: Callable, sender: Any, named: dict) -> Any:
        try:
            return await receiver(signal=self, sender=sender, **named)
        except Exception as err:
            self._log_robust_failure(receiver, err)
            return err

    def _log_robust_failure(self, receiver: Callable, err: Exception) -> None:
        name = getattr(receiver, "__qualname__", repr(receiver))
        logger.error(
            "Error calling %s in Signal.send_robust() (%s)", name, err, exc_info=err
        )

    def _cache_get(self, sender: Any) -> Any:
        try:
            return self.sender_receivers_cache.get(sender)
        except TypeError:
            # Sender can't be weakly referenced (e.g. None)
            return None

    def _cache_set(self, sender: Any, value: Any) -> None:
        try:
            self.sender_receivers_cache[sender] = value
        except TypeError:
            pass

    def _clear_dead_receivers(self) -> None:
        # Caller must hold self.lock
        if self._dead_receivers:
            self._dead_receivers = False
            self.receivers = [
                r
                for r in self.receivers
                if not (isinstance(r[1], weakref.ReferenceType) and r[1]() is None)
                and not (r[2] is not None and r[2]() is None)
            ]

    def _live_receivers(self, sender: Any) -> tuple[list[Callable], list[Callable]]:
        """Return ``(sync_receivers, async_receivers)`` for sender.

        Resolves weak references; receivers whose referent is gone are
        skipped here and pruned on the next lock acquisition.
        """
        receivers = None
        if self.use_caching and not self._dead_receivers:
            receivers = self._cache_get(sender)
            if receivers is NO_RECEIVERS:
                return [], []
        if receivers is None:
            with self.lock:
                self._clear_dead_receivers()
                senderkey = _make_id(sender)
                receivers = []
                for (_receiverkey, r_senderkey), receiver, sender_ref, is_async in self.receivers:
                    if r_senderkey == NONE_ID or r_senderkey == senderkey:
                        receivers.append((receiver, sender_ref, is_async))
                if self.use_caching:
                    self._cache_set(sender, receivers or NO_RECEIVERS)

        sync_receivers = []
        async_receivers = []
        for receiver, sender_ref, is_async in receivers:
            # A recycled id() must not match a collected sender
            if sender_ref is not None and sender_ref() is None:
                continue
            if isinstance(receiver, weakref.ReferenceType):
                receiver = receiver()
                if receiver is None:
                    continue
            if is_async:
                async_receivers.append(receiver)
            else:
                sync_receivers.append(receiver)
        return sync_receivers, async_receivers

    def _remove_receiver(self, *args: Any) -> None:
        # Weakref callback: flag the list for pruning. Taking the lock here
        # could deadlock if collection happens while it is held.
        self._dead_receivers = True


def receiver(signal: Signal | list[Signal] | tuple[Signal, ...], **kwargs: Any):
    """Decorator connecting a function to one or more signals.

    Usage:
        @receiver(post_save, sender=MyModel)
        def handler(sender, **kwargs):
            ...

        @receiver([post_save, post_delete], sender=MyModel)
        def handler(sender, **kwargs):
            ...
    """

    def _decorator(func):
        if isinstance(signal, (list, tuple)):
            for s in signal:
                s.connect(func, **kwargs)
        else:
            signal.connect(func, **kwargs)
        return func

    return _decorator
