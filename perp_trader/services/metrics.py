from prometheus_client import Counter, Histogram

cycles_counter = Counter("perp_trader_cycles_total", "Trading cycles by outcome", ["outcome"])
decisions_counter = Counter("perp_trader_decisions_total", "Decisions by final value", ["decision"])
orders_counter = Counter("perp_trader_orders_total", "Orders by kind and result", ["kind", "result"])
exchange_retries_counter = Counter("perp_trader_exchange_retries_total", "Retried exchange requests", ["reason"])
reconciled_positions_counter = Counter("perp_trader_reconciled_positions_total", "Stale local positions removed")
order_latency = Histogram("perp_trader_order_latency_seconds", "Order submission latency seconds")
cycle_duration = Histogram("perp_trader_cycle_duration_seconds", "Trading cycle duration seconds")
