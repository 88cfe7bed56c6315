#!/usr/bin/env python3
"""
Example service wired with telemetry_pipeline.

Run with:
    uvicorn examples.orders_service:app --port 8000

Then:
    curl localhost:8000/orders/42     # traced, exported
    curl localhost:8000/health        # not traced (suppressed route)
    curl localhost:8000/metrics       # Prometheus scrape
"""

import logging
import os

from fastapi import FastAPI, HTTPException

from telemetry_pipeline import (
    add_custom_metrics,
    add_custom_traces,
    bootstrap,
    get_telemetry,
    load_config_source,
)

CONFIG_PATH = os.path.join(os.path.dirname(__file__), "..", "config", "observability.yml")

logger = logging.getLogger(__name__)

app = FastAPI(title="Orders API")
add_custom_metrics(
    add_custom_traces(
        bootstrap(app, load_config_source(os.getenv("OBSERVABILITY_CONFIG", CONFIG_PATH))),
        "orders.checkout",
    ),
    "orders.business",
)

telemetry = get_telemetry(app)
checkout_tracer = telemetry.tracing.tracer("orders.checkout")
business_meter = telemetry.registrar.register_metric_source("orders.business")
orders_looked_up = business_meter.create_counter(
    "orders.looked_up",
    unit="{order}",
    description="Order lookups by outcome",
)

ORDERS = {42: {"order_id": 42, "status": "shipped", "amount": 129.90}}


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/orders/{order_id}")
def get_order(order_id: int):
    with checkout_tracer.start_as_current_span("load-order") as span:
        span.set_attribute("order.id", order_id)
        order = ORDERS.get(order_id)

    if order is None:
        orders_looked_up.add(1, {"outcome": "not_found"})
        logger.warning("Order not found", extra={"order_id": order_id})
        raise HTTPException(status_code=404, detail="Order not found")

    orders_looked_up.add(1, {"outcome": "found"})
    logger.info("Order served", extra={"order_id": order_id, "status": order["status"]})
    return order
