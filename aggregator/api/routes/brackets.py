"""Price bracket routes."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from aggregator.api.deps import get_task_runner
from aggregator.worker.tasks import TaskRunner

router = APIRouter(prefix="/api/brackets", tags=["brackets"])


class BracketPlanResponse(BaseModel):
    product_id: str
    currency: str
    step_size: Decimal
    bucket_index: int
    min_price: Decimal
    max_price: Decimal

    class Config:
        from_attributes = True


class BracketResponse(BracketPlanResponse):
    """A stored bracket with its store submission state."""
    id: int
    is_active: bool
    android_status: str
    android_sync_error: Optional[str]
    android_last_sync_at: Optional[datetime]
    apple_status: str
    apple_sync_error: Optional[str]
    apple_last_sync_at: Optional[datetime]


class BracketRequest(BaseModel):
    currency: str = Field(..., min_length=3, max_length=3)
    step_size: Decimal


class BracketPreviewResponse(BaseModel):
    currency: str
    step_size: Decimal
    min_price: Decimal
    max_price: Decimal
    brackets: List[BracketPlanResponse]

    class Config:
        from_attributes = True


class BracketGenerationResponse(BaseModel):
    currency: str
    step_size: Decimal
    created: int
    reused: int
    deactivated: int
    brackets: List[BracketPlanResponse]

    class Config:
        from_attributes = True


class SubmissionSummaryResponse(BaseModel):
    currency: str
    submitted: int
    succeeded: int
    failed: int
    errors: List[str]

    class Config:
        from_attributes = True


@router.get("", response_model=List[BracketResponse])
async def list_brackets(
    currency: Optional[str] = None,
    active_only: bool = True,
    runner: TaskRunner = Depends(get_task_runner),
):
    """List stored brackets."""
    return await runner.brackets.list_brackets(currency, active_only)


@router.post("/preview", response_model=BracketPreviewResponse)
async def preview_brackets(data: BracketRequest, runner: TaskRunner = Depends(get_task_runner)):
    """Show the brackets a generation would produce. Nothing is written."""
    return await runner.preview_brackets(data.currency, data.step_size)


@router.post("/generate", response_model=BracketGenerationResponse)
async def generate_brackets(data: BracketRequest, runner: TaskRunner = Depends(get_task_runner)):
    """
    Persist brackets for a currency, replacing the previous active set.

    Returns 409 if a generation for the same currency is running.
    """
    return await runner.generate_brackets(data.currency, data.step_size)


@router.post("/{currency}/submit", response_model=SubmissionSummaryResponse)
async def submit_brackets(currency: str, runner: TaskRunner = Depends(get_task_runner)):
    """Submit pending brackets to the configured app stores."""
    return await runner.submit_brackets(currency)
