"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Summary


REQUEST_COUNTER = Counter(
	"chatcore_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"chatcore_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"chatcore_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"chatcore_socketio_events_total",
	"Socket.IO events handled or emitted per namespace",
	["namespace", "event"],
)

AUTH_FAILURES = Counter(
	"chatcore_auth_failures_total",
	"Rejected credentials by internal reason",
	["reason"],
)

CHAT_SEND = Counter(
	"chatcore_chat_send_total",
	"Chat messages appended",
	["transport"],
)

CHAT_READ_UPDATES = Counter(
	"chatcore_chat_read_updates_total",
	"Chat read receipts that marked at least one message",
)

CONVERSATIONS_CREATED = Counter(
	"chatcore_conversations_created_total",
	"Conversations created",
	["kind"],
)

BROADCAST_DELIVERIES = Counter(
	"chatcore_broadcast_deliveries_total",
	"Live events delivered to a connection",
	["event"],
)

BROADCAST_DROPS = Counter(
	"chatcore_broadcast_drops_total",
	"Live events dropped for a connection",
	["event"],
)

IDEMPOTENCY_OUTCOMES = Counter(
	"chatcore_idempotency_total",
	"Idempotency key lookups by outcome",
	["outcome"],
)

REDIS_UP = Gauge("chatcore_redis_up", "Redis availability (1=up,0=down)")
REDIS_LATENCY = Summary("chatcore_redis_latency_seconds", "Redis ping latency (seconds)")

POSTGRES_UP = Gauge("chatcore_postgres_up", "Postgres availability (1=up,0=down)")
POSTGRES_LATENCY = Summary("chatcore_postgres_latency_seconds", "Postgres ping latency (seconds)")


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_auth_failure(reason: str) -> None:
	AUTH_FAILURES.labels(reason=reason).inc()


def inc_chat_send(transport: str) -> None:
	CHAT_SEND.labels(transport=transport).inc()


def inc_chat_read() -> None:
	CHAT_READ_UPDATES.inc()


def inc_conversation_created(kind: str) -> None:
	CONVERSATIONS_CREATED.labels(kind=kind).inc()


def inc_broadcast_delivered(event: str) -> None:
	BROADCAST_DELIVERIES.labels(event=event).inc()


def inc_broadcast_dropped(event: str) -> None:
	BROADCAST_DROPS.labels(event=event).inc()


def inc_idempotency(outcome: str) -> None:
	IDEMPOTENCY_OUTCOMES.labels(outcome=outcome).inc()


def mark_redis(ok: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if ok else 0)
	if ok and latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)


def mark_postgres(ok: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if ok else 0)
	if ok and latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)
