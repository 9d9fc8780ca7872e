"""Flow capacity endpoint."""

from fastapi import APIRouter, Depends

from ytflow.api.dependencies import get_producer
from ytflow.pipeline.producer import FlowProducer

router = APIRouter(prefix="/api/v1", tags=["flows"])


@router.get("/flows")
async def get_flow_stats(producer: FlowProducer = Depends(get_producer)):
    """Active flows and how much admission capacity is left."""
    return producer.flow_stats()
