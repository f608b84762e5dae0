"""Composable lifecycle hooks for a single logical request.

Several independent parties want to observe the same request: the probe
engine times its phases, the client counts raw bytes, tests watch for TCP
connects.  Each of them describes what it cares about as a :class:`HookSet`
and attaches it to a :class:`TraceContext`.  Attaching never replaces what is
already there; :func:`dispatch` multicasts an event to every hook set that
handles it, most recently attached first.

The current context travels with the asyncio task through a
:class:`contextvars.ContextVar`, so the network layer (which only sees hosts,
ports and streams) can emit events for whichever request it is serving::

    ctx = attach(current_trace(), HookSet(tcp_start=on_tcp_start))
    with use_trace(ctx):
        await client.send(request)
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

logger = logging.getLogger(__name__)

Hook = Optional[Callable[..., None]]


@dataclass(frozen=True)
class HookSet:
    """Optional callbacks for the events of one request.

    Adding a new kind of event only requires a new field here; neither
    :func:`attach` nor :func:`dispatch` knows about individual events.
    """

    get_conn: Hook = None  # (host_port: str)
    got_conn: Hook = None
    dns_start: Hook = None  # (host: str)
    dns_done: Hook = None  # (addr: str | None)
    tcp_start: Hook = None
    tcp_established: Hook = None
    tls_start: Hook = None
    tls_done: Hook = None
    quic_start: Hook = None
    quic_done: Hook = None
    wrote_request: Hook = None
    got_first_response_byte: Hook = None
    read: Hook = None  # (nbytes: int)
    write: Hook = None  # (nbytes: int)


@dataclass(frozen=True)
class TraceContext:
    """An ordered, immutable stack of hook sets (newest first)."""

    hook_sets: tuple[HookSet, ...] = ()

    def __len__(self) -> int:
        return len(self.hook_sets)


EMPTY_TRACE = TraceContext()

_current_trace: contextvars.ContextVar[TraceContext] = contextvars.ContextVar(
    "httpping_trace", default=EMPTY_TRACE
)


def attach(context: TraceContext, hook_set: HookSet) -> TraceContext:
    """Return a new context where *hook_set* fires before everything in *context*."""
    if hook_set is None:
        raise TypeError("cannot attach a None hook set")
    return TraceContext((hook_set,) + context.hook_sets)


def dispatch(context: TraceContext, event: str, *args: Any) -> None:
    """Invoke the *event* handler of every hook set that defines one."""
    for hook_set in context.hook_sets:
        handler = getattr(hook_set, event)
        if handler is not None:
            handler(*args)


def current_trace() -> TraceContext:
    return _current_trace.get()


@contextlib.contextmanager
def use_trace(context: TraceContext) -> Iterator[TraceContext]:
    """Make *context* the current trace for the enclosed block."""
    token = _current_trace.set(context)
    try:
        yield context
    finally:
        _current_trace.reset(token)


def emit(event: str, *args: Any) -> None:
    """Dispatch *event* to the current task's trace context."""
    dispatch(_current_trace.get(), event, *args)
