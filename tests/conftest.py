"""
Shared fixtures: a small project with two workflows, inherited and enum
fields, a link, and a calculation that adds denials and policy checks.
"""
from pathlib import Path

import pytest

from infrastructure.card_store import CardStore
from infrastructure.config import EngineConfig
from infrastructure.fact_compiler import FactCompiler
from infrastructure.solver_gateway import SolverGateway
from orchestration.engine import ProjectSession

FIXTURES = Path(__file__).parent / "fixtures"
PROJECT_YAML = FIXTURES / "project.yaml"


@pytest.fixture
def store() -> CardStore:
    return CardStore.from_yaml(PROJECT_YAML)


@pytest.fixture
def gateway() -> SolverGateway:
    return SolverGateway(timeout_seconds=10, cache_entries=16)


@pytest.fixture
def compiler(store, gateway) -> FactCompiler:
    return FactCompiler(store, gateway)


@pytest.fixture
def session(store, gateway) -> ProjectSession:
    return ProjectSession(store, config=EngineConfig(), gateway=gateway)
