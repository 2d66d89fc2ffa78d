from fastapi import APIRouter, Depends

from confflow.api.v1.common import get_assignment_service, ok
from confflow.core.auth_utils import get_current_identity
from confflow.models.schemas import AssignmentResponseRequest, ReviewSubmission
from confflow.schemas.token import IdentityClaims
from confflow.services.assignment_service import AssignmentService

router = APIRouter(prefix="/reviewer", tags=["Reviewer"])


@router.get("/assignments")
async def list_my_assignments(
    identity: IdentityClaims = Depends(get_current_identity),
    service: AssignmentService = Depends(get_assignment_service),
):
    return ok(service.list_assignments_for_reviewer(identity))


@router.post("/assignments/{assignment_id}/respond")
async def respond_to_assignment(
    assignment_id: str,
    payload: AssignmentResponseRequest,
    identity: IdentityClaims = Depends(get_current_identity),
    service: AssignmentService = Depends(get_assignment_service),
):
    return ok(service.update_assignment_status(assignment_id, identity, payload.action))


@router.post("/assignments/{assignment_id}/review", status_code=201)
async def submit_review(
    assignment_id: str,
    payload: ReviewSubmission,
    identity: IdentityClaims = Depends(get_current_identity),
    service: AssignmentService = Depends(get_assignment_service),
):
    review = service.submit_review(
        assignment_id,
        identity,
        score=payload.score,
        recommendation=payload.recommendation,
        comment_to_author=payload.comment_to_author,
        comment_to_editor=payload.comment_to_editor,
    )
    return ok(review)
