"""Dependency injection providers for FastAPI."""

from functools import lru_cache

from fastapi import Depends

from ytflow.config import get_settings
from ytflow.pipeline.coordinator import FlowCoordinator, build_coordinator
from ytflow.pipeline.producer import FlowProducer


@lru_cache
def get_coordinator() -> FlowCoordinator:
    coordinator = build_coordinator(get_settings())
    coordinator.start()
    return coordinator


def get_producer(coordinator: FlowCoordinator = Depends(get_coordinator)) -> FlowProducer:
    return coordinator.producer
