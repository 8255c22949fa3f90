from __future__ import annotations

import pytest

from dutystack.tariff.hierarchy import CodeHierarchyStore, get_hierarchy_store
from dutystack.tariff.layers import TariffLayerRegistry, get_layer_registry
from tests.helpers.tariff_factories import SEED_RECORDS


@pytest.fixture(scope="session")
def hierarchy() -> CodeHierarchyStore:
    return get_hierarchy_store()


@pytest.fixture(scope="session")
def registry() -> TariffLayerRegistry:
    return get_layer_registry()


@pytest.fixture()
def small_store() -> CodeHierarchyStore:
    return CodeHierarchyStore.from_records(SEED_RECORDS, revision="test-rev")
