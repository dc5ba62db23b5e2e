"""Prometheus metrics for booking and payment observability."""

from prometheus_client import Counter, Histogram

# Booking lifecycle counters
BOOKINGS_CREATED = Counter(
    "cleanbook_bookings_created_total",
    "Total bookings created",
    ["settlement"],
)
BOOKING_TRANSITIONS = Counter(
    "cleanbook_booking_transitions_total",
    "Booking status transitions applied",
    ["to_status"],
)
BOOKINGS_CANCELLED = Counter(
    "cleanbook_bookings_cancelled_total",
    "Total bookings cancelled",
    ["cancelled_by"],
)

# Payment counters
PAYMENTS_DECLINED = Counter(
    "cleanbook_payments_declined_total",
    "Payment confirmations that did not succeed",
)
REFUNDS = Counter(
    "cleanbook_refunds_total",
    "Refund attempts by outcome",
    ["outcome"],
)

# Stripe API call duration
STRIPE_CALL_DURATION = Histogram(
    "cleanbook_stripe_call_duration_seconds",
    "Duration of Stripe API calls",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
)

# Viewer cache
BOOKING_CACHE_LOOKUPS = Counter(
    "cleanbook_booking_cache_lookups_total",
    "Booking list cache lookups",
    ["result"],
)

# HTTP traffic, fed by the instrumentator in main.py
HTTP_REQUESTS = Counter(
    "cleanbook_http_requests_total",
    "HTTP requests by method, status class and route",
    ["method", "status", "handler"],
)
HTTP_LATENCY = Histogram(
    "cleanbook_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "handler"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)
