"""Prometheus metrics exporters."""
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry

# Create registry
registry = CollectorRegistry()

# ========== POSITION METRICS ==========
positions_opened = Counter(
    'positions_opened_total',
    'Total number of positions opened',
    ['pool'],
    registry=registry
)

positions_closed = Counter(
    'positions_closed_total',
    'Total number of positions closed or discarded',
    ['pool', 'outcome'],
    registry=registry
)

# ========== SALE METRICS ==========
partial_sales = Counter(
    'partial_sales_total',
    'Partial sales by resulting state',
    ['pool', 'state'],
    registry=registry
)

# ========== POOL METRICS ==========
pool_liquidity = Gauge(
    'pool_liquidity_usd',
    'Pool liquidity by kind',
    ['pool', 'kind'],
    registry=registry
)

pool_imbalances = Counter(
    'pool_imbalances_total',
    'Pool invariant violations detected',
    ['pool'],
    registry=registry
)

pool_busy = Counter(
    'pool_busy_total',
    'Mutations rejected because the pool lock was held',
    ['pool'],
    registry=registry
)

# ========== POLICY / RECONCILIATION METRICS ==========
policy_corrections = Counter(
    'policy_corrections_total',
    'Policy violations corrected',
    ['pool', 'rule'],
    registry=registry
)

reconciliation_repairs = Counter(
    'reconciliation_repairs_total',
    'Corrective mutations made by reconciliation',
    ['pool', 'action'],
    registry=registry
)

reconciliation_duration = Histogram(
    'reconciliation_seconds',
    'Reconciliation run time in seconds',
    registry=registry
)

# ========== HELPER FUNCTIONS ==========
def record_position_opened(pool: str):
    positions_opened.labels(pool=pool).inc()

def record_position_closed(pool: str, outcome: str):
    positions_closed.labels(pool=pool, outcome=outcome).inc()

def record_partial_sale(pool: str, state: str):
    partial_sales.labels(pool=pool, state=state).inc()

def update_pool_liquidity(pool: str, totals: dict):
    """Publish the pool's liquidity figures."""
    for kind in ('total_liquidity', 'available_liquidity', 'distributed_liquidity'):
        pool_liquidity.labels(pool=pool, kind=kind).set(float(totals[kind]))

def record_pool_imbalance(pool: str):
    pool_imbalances.labels(pool=pool).inc()

def record_pool_busy(pool: str):
    pool_busy.labels(pool=pool).inc()

def record_policy_correction(pool: str, rule: str):
    policy_corrections.labels(pool=pool, rule=rule).inc()

def record_reconciliation_repair(pool: str, action: str):
    reconciliation_repairs.labels(pool=pool, action=action).inc()
