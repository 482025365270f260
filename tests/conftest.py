"""
Pytest configuration and fixtures
"""
from typing import List

import pytest

from datafabric.capture.source import InMemorySourceDatabase
from datafabric.events.event_log import InMemoryEventLog
from datafabric.pipeline.orchestrator import DataFabric
from datafabric.utils.config import (
    Config,
    ForeignKeyConfig,
    GraphMappingConfig,
    RetrySettings,
    TableConfig,
)


def retail_tables() -> List[TableConfig]:
    """customers <- orders -> order_lines -> products"""
    return [
        TableConfig(
            name="customers",
            key_columns=["customer_id"],
            text_columns=["name", "city"],
        ),
        TableConfig(
            name="products",
            key_columns=["product_id"],
            text_columns=["name", "description"],
            metadata_columns=["name", "category", "price"],
        ),
        TableConfig(
            name="orders",
            key_columns=["order_id"],
            text_columns=["status"],
            graph=GraphMappingConfig(foreign_keys=[
                ForeignKeyConfig(column="customer_id", target_table="customers", rel_type="PLACED_BY"),
            ]),
        ),
        TableConfig(
            name="order_lines",
            key_columns=["order_id", "product_id"],
            sinks=["graph"],
            graph=GraphMappingConfig(
                edge_from=ForeignKeyConfig(column="order_id", target_table="orders", rel_type="CONTAINS"),
                edge_to=ForeignKeyConfig(column="product_id", target_table="products", rel_type="CONTAINS"),
                edge_type="CONTAINS",
            ),
        ),
    ]


@pytest.fixture
def tables() -> List[TableConfig]:
    return retail_tables()


@pytest.fixture
def test_config(tables) -> Config:
    """In-memory configuration with fast retries and small batches"""
    config = Config.default(tables)
    config.event_log.partitions = 4
    config.sinks.vector.dimension = 64
    config.retry = RetrySettings(max_attempts=3, min_wait=0, max_wait=0, multiplier=1)
    config.batching.max_batch_delay_ms = 0
    config.reconciliation.partitions = 4
    config.reconciliation.enabled = False
    return config


@pytest.fixture
def source_db(tables) -> InMemorySourceDatabase:
    return InMemorySourceDatabase({t.name: t.key_columns for t in tables})


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog(default_partitions=4)


@pytest.fixture
def fabric(test_config, source_db, event_log) -> DataFabric:
    return DataFabric(test_config, source=source_db, snapshot_reader=source_db, event_log=event_log)


def seed_retail(db: InMemorySourceDatabase) -> None:
    """A small catalogue: two customers, three products, two orders"""
    db.insert("customers", {"customer_id": "C1", "name": "Ada Lovelace", "city": "London"})
    db.insert("customers", {"customer_id": "C2", "name": "Grace Hopper", "city": "Arlington"})
    db.insert("products", {
        "product_id": "P1", "name": "Wireless Headphones", "description": "noise cancelling over-ear",
        "category": "audio", "price": 199.0,
    })
    db.insert("products", {
        "product_id": "P2", "name": "Bluetooth Speaker", "description": "portable wireless speaker",
        "category": "audio", "price": 89.0,
    })
    db.insert("products", {
        "product_id": "P3", "name": "Mechanical Keyboard", "description": "tactile switches",
        "category": "peripherals", "price": 120.0,
    })
    with db.transaction() as tx:
        tx.insert("orders", {"order_id": "O1", "customer_id": "C1", "status": "shipped"})
        tx.insert("order_lines", {"order_id": "O1", "product_id": "P1", "quantity": 1})
        tx.insert("order_lines", {"order_id": "O1", "product_id": "P3", "quantity": 2})
    db.insert("orders", {"order_id": "O2", "customer_id": "C2", "status": "pending"})


@pytest.fixture
def seeded_db(source_db) -> InMemorySourceDatabase:
    seed_retail(source_db)
    return source_db


@pytest.fixture(autouse=True)
def reset_app_state():
    """Forget API singletons between tests"""
    from api.dependencies import AppState

    AppState.reset()
    yield
    AppState.reset()
