from prometheus_client import Counter, Histogram, Gauge

reservations_total = Counter(
    'seatflow_reservations_total',
    'Seat reservation attempts',
    ['status']
)

reservation_latency_seconds = Histogram(
    'seatflow_reservation_latency_seconds',
    'Seat reservation latency'
)

enrollments_total = Counter(
    'seatflow_enrollments_total',
    'Enrollment outcomes',
    ['source', 'status']
)

code_redemptions_total = Counter(
    'seatflow_code_redemptions_total',
    'Access code redemption outcomes',
    ['status']
)

alerts_total = Counter(
    'seatflow_operational_alerts_total',
    'Integrity alerts raised for manual reconciliation',
    ['kind']
)

seats_taken = Gauge(
    'seatflow_seats_taken',
    'Seats taken in session',
    ['session_id']
)

capacity = Gauge(
    'seatflow_capacity',
    'Session capacity',
    ['session_id']
)
