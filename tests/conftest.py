import pytest

from affinity_engine.domain.services.engine import reset_engine
from affinity_engine.domain.services.training_svc import (
    analyze_frequently_bought_together,
    train_content_model,
)

from tests.sample_data import CATALOG, ORDERS


@pytest.fixture
def engine():
    return reset_engine()


@pytest.fixture
def trained_engine(engine):
    train_content_model(engine, CATALOG)
    analyze_frequently_bought_together(engine, ORDERS)
    return engine
