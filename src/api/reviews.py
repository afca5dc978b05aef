"""Review routes."""
# ruff: noqa: B008  Depends() in function defaults is standard FastAPI

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status

from src.api.deps import current_user_id, get_service
from src.api.schemas import ReviewRequest, ReviewResponse, SubmitReviewResponse
from src.lifecycle.service import SessionLifecycleService

router = APIRouter(prefix="/api/reviews", tags=["reviews"])


@router.post("", response_model=SubmitReviewResponse, status_code=status.HTTP_201_CREATED)
async def submit_review(
    body: ReviewRequest,
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> SubmitReviewResponse:
    """Guest rates an ended session; one review per session."""
    result = await service.submit_review(body.session_id, user_id, body.rating, body.comment)
    return SubmitReviewResponse(
        review=ReviewResponse.from_record(result.review),
        average_rating=float(result.average_rating),
        review_count=result.review_count,
    )


@router.get("/session/{session_id}", response_model=list[ReviewResponse])
async def session_reviews(
    session_id: uuid.UUID,
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> list[ReviewResponse]:
    reviews = await service.session_reviews(session_id, user_id)
    return [ReviewResponse.from_record(r) for r in reviews]
