# providers.py - Provider manager shared by transcription, generation and synthesis
"""
One manager implementation serves all three provider kinds. Each manager owns a
priority-ordered list of providers, one circuit breaker per provider, and the
ProviderStatus of each; callers only ever see immutable snapshots.

Request policy (`stream_request`):
- pick the highest-priority provider whose breaker admits a request
- a failure before any output counts toward that provider's breaker and is
  retried on the same provider until its breaker opens, then the next one is tried
- a missed time-to-first-chunk deadline counts as a failure and falls over to
  the next provider immediately
- a failure after output was delivered is never failed over (the consumer
  already has part of the answer); it raises ProviderStreamError
- with no usable provider left, ProviderExhaustedError is raised
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from circuit import CircuitBreaker, ConnectionState, ProviderStatus
from components import Provider, ProviderKind
from credentials import CredentialSource
from errors import (ConfigurationError, ProviderExhaustedError, ProviderStreamError,
                    ProviderTimeoutError)
from events import EventBus, EventType

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    name: str
    provider: Optional[Provider]
    breaker: CircuitBreaker
    connection: ConnectionState = ConnectionState.DISCONNECTED
    enabled: bool = True
    disabled_reason: str = ""


class ProviderManager:
    def __init__(self,
                 kind: ProviderKind,
                 providers: Iterable[Provider] = (),
                 *,
                 failure_threshold: int = 3,
                 cooldown: float = 60.0,
                 first_chunk_timeout: float = 5.0,
                 chunk_timeout: float = 15.0,
                 clock: Callable[[], float] = time.monotonic,
                 events: Optional[EventBus] = None):
        self.kind = ProviderKind(kind)
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.first_chunk_timeout = first_chunk_timeout
        self.chunk_timeout = chunk_timeout
        self._clock = clock
        self._events = events
        self._entries: List[_Entry] = []
        self._active: Optional[str] = None
        for provider in providers:
            self.add(provider)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def add(self, provider: Provider, name: Optional[str] = None) -> None:
        """Append a provider at the lowest priority."""
        if ProviderKind(provider.kind) != self.kind:
            raise ConfigurationError(
                f"{provider.name} is a {provider.kind} provider, not {self.kind.value}")
        self._entries.append(_Entry(name=name or provider.name, provider=provider,
                                    breaker=self._new_breaker(name or provider.name)))

    def disable(self, name: str, reason: str) -> None:
        """Record a configured provider that cannot be used (configuration error)."""
        self._entries.append(_Entry(name=name, provider=None, breaker=self._new_breaker(name),
                                    enabled=False, disabled_reason=reason))

    def _new_breaker(self, name: str) -> CircuitBreaker:
        return CircuitBreaker(f"{self.kind.value}/{name}",
                              failure_threshold=self.failure_threshold,
                              cooldown=self.cooldown, clock=self._clock)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        for entry in self._entries:
            if entry.enabled:
                await self._connect(entry)
        usable = [e.name for e in self._entries if e.enabled]
        if not usable:
            logger.error("No usable %s providers configured", self.kind.value)
        else:
            logger.info("%s providers (priority order): %s", self.kind.value, ", ".join(usable))

    async def stop(self) -> None:
        for entry in self._entries:
            if entry.provider is None or entry.connection == ConnectionState.DISCONNECTED:
                continue
            try:
                await entry.provider.stop()
            except Exception as exc:
                logger.warning("Error stopping %s provider %s: %s", self.kind.value, entry.name, exc)
            entry.connection = ConnectionState.DISCONNECTED
        self._active = None

    async def _connect(self, entry: _Entry) -> bool:
        entry.connection = ConnectionState.CONNECTING
        try:
            await entry.provider.start()
        except Exception as exc:
            entry.connection = ConnectionState.DISCONNECTED
            entry.breaker.record_failure()
            logger.warning("Failed to start %s provider %s: %s", self.kind.value, entry.name, exc)
            return False
        entry.connection = ConnectionState.CONNECTED
        return True

    def _connection(self, entry: _Entry) -> ConnectionState:
        # A started provider reports its own link state (e.g. a dropped client)
        if entry.connection == ConnectionState.CONNECTED and entry.provider is not None:
            return entry.provider.status()
        return entry.connection

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Tuple[ProviderStatus, ...]:
        return tuple(
            ProviderStatus(kind=self.kind.value, name=e.name, connection=self._connection(e),
                           breaker=e.breaker.state,
                           consecutive_failures=e.breaker.consecutive_failures,
                           last_failure_at=e.breaker.last_failure_at,
                           enabled=e.enabled, disabled_reason=e.disabled_reason)
            for e in self._entries
        )

    @property
    def active_provider(self) -> Optional[str]:
        return self._active

    def has_usable_provider(self) -> bool:
        return any(e.enabled and e.breaker.is_available() for e in self._entries)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def stream_request(self, payload: Any, *,
                             is_cancelled: Optional[Callable[[], bool]] = None) -> AsyncIterator[Any]:
        """
        Stream output chunks for one request, failing over between providers.

        Args:
            payload: Kind-specific request payload (see components.Provider)
            is_cancelled: Checked before every chunk; once it returns True the
                stream ends quietly and the in-flight provider call is closed

        Yields:
            Provider output chunks, in order, from exactly one provider

        Raises:
            ProviderStreamError: the provider failed after delivering output
            ProviderExhaustedError: no provider could serve the request
        """
        attempted: List[str] = []
        for entry in self._entries:
            if not entry.enabled:
                continue
            while entry.breaker.allow_request():
                if is_cancelled is not None and is_cancelled():
                    entry.breaker.release_probe()
                    return
                if entry.name not in attempted:
                    attempted.append(entry.name)
                if self._connection(entry) != ConnectionState.CONNECTED and not await self._connect(entry):
                    continue
                self._set_active(entry.name)

                stream = entry.provider.stream_request(payload)
                delivered = 0
                failure: Optional[BaseException] = None
                cancelled = False
                try:
                    while True:
                        timeout = self.chunk_timeout if delivered else self.first_chunk_timeout
                        try:
                            chunk = await asyncio.wait_for(stream.__anext__(), timeout)
                        except StopAsyncIteration:
                            break
                        except asyncio.TimeoutError:
                            failure = ProviderTimeoutError(
                                f"no {'chunk' if delivered else 'first chunk'} within {timeout:.1f}s",
                                self.kind.value, entry.name)
                            break
                        except asyncio.CancelledError:
                            raise
                        except Exception as exc:
                            failure = exc
                            break
                        if is_cancelled is not None and is_cancelled():
                            cancelled = True
                            break
                        delivered += 1
                        yield chunk
                except BaseException:
                    # Consumer closed us or the task was cancelled: no outcome to record
                    entry.breaker.release_probe()
                    raise
                finally:
                    await _close_quietly(stream)

                if cancelled:
                    entry.breaker.release_probe()
                    logger.debug("%s request on %s cancelled after %d chunks",
                                 self.kind.value, entry.name, delivered)
                    return
                if failure is None:
                    entry.breaker.record_success()
                    return

                entry.breaker.record_failure()
                logger.warning("%s provider %s failed (%d/%d): %s", self.kind.value, entry.name,
                               entry.breaker.consecutive_failures, self.failure_threshold, failure)
                if delivered:
                    raise ProviderStreamError(str(failure), self.kind.value, entry.name) from failure
                if isinstance(failure, ProviderTimeoutError):
                    break

        raise ProviderExhaustedError(self.kind.value, attempted)

    def _set_active(self, name: str) -> None:
        if name == self._active:
            return
        previous, self._active = self._active, name
        logger.info("Active %s provider: %s -> %s", self.kind.value, previous, name)
        if self._events:
            self._events.emit(EventType.PROVIDER_CHANGED, provider_kind=self.kind.value,
                              previous=previous, current=name)


async def _close_quietly(stream: AsyncIterator[Any]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:
        logger.debug("Error closing provider stream: %s", exc)


# ----------------------------------------------------------------------
# Construction from configuration
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderSpec:
    """How to build one named back-end.

    `factory(secret, option)` returns a Provider; `secret` names the credential
    the back-end needs (None if it needs none).
    """
    factory: Callable[[Optional[str], str], Provider]
    secret: Optional[str] = None


def build_manager(kind: ProviderKind,
                  entries: Sequence[Tuple[str, str]],
                  registry: Dict[str, ProviderSpec],
                  credentials: CredentialSource,
                  events: Optional[EventBus] = None,
                  **policy) -> ProviderManager:
    """
    Build a manager from `(name, option)` entries in priority order.

    A provider whose credential is missing, whose name is unknown or whose
    factory rejects its option is disabled and reported as a configuration
    error; the remaining providers are still used.
    """
    manager = ProviderManager(kind, events=events, **policy)
    for name, option in entries:
        label = f"{name}:{option}" if option else name
        spec = registry.get(name)
        if spec is None:
            _report_disabled(manager, label, f"unknown {kind.value} provider '{name}'", events)
            continue

        secret = None
        if spec.secret:
            secret = credentials.get_secret(spec.secret)
            if not secret:
                _report_disabled(manager, label, f"missing credential {spec.secret}", events)
                continue

        try:
            provider = spec.factory(secret, option)
        except (ConfigurationError, ValueError) as exc:
            _report_disabled(manager, label, str(exc), events)
            continue
        manager.add(provider, name=label)
    return manager


def _report_disabled(manager: ProviderManager, label: str, reason: str,
                     events: Optional[EventBus]) -> None:
    logger.error("Disabling %s provider %s: %s", manager.kind.value, label, reason)
    manager.disable(label, reason)
    if events:
        events.emit(EventType.ERROR, kind=ConfigurationError.kind,
                    detail={"stage": "startup", "provider_kind": manager.kind.value,
                            "provider": label, "message": reason})
