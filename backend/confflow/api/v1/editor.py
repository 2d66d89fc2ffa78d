from fastapi import APIRouter, Depends

from confflow.api.v1.common import get_assignment_service, get_decision_service, get_manuscript_service, ok
from confflow.core.auth_utils import get_current_identity
from confflow.models.decision import DecisionRequest
from confflow.models.schemas import AssignReviewersRequest
from confflow.schemas.token import IdentityClaims
from confflow.services.assignment_service import AssignmentService
from confflow.services.decision_service import DecisionService
from confflow.services.manuscript_service import ManuscriptService

router = APIRouter(prefix="/editor", tags=["Editor"])


@router.post("/manuscripts/{manuscript_id}/assign-reviewers")
async def assign_reviewers(
    manuscript_id: str,
    payload: AssignReviewersRequest,
    identity: IdentityClaims = Depends(get_current_identity),
    service: AssignmentService = Depends(get_assignment_service),
):
    """
    指派审稿人（幂等：已存在的指派原样返回）。
    """
    assignments = service.assign(manuscript_id, identity, payload.reviewer_ids, payload.due_date)
    return ok(assignments)


@router.post("/manuscripts/{manuscript_id}/decision", status_code=201)
async def record_decision(
    manuscript_id: str,
    payload: DecisionRequest,
    identity: IdentityClaims = Depends(get_current_identity),
    service: DecisionService = Depends(get_decision_service),
):
    return ok(service.decide(manuscript_id, identity, payload.result, payload.note))


@router.get("/manuscripts/{manuscript_id}/transitions")
async def list_transitions(
    manuscript_id: str,
    identity: IdentityClaims = Depends(get_current_identity),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return ok(service.list_transitions(manuscript_id, identity))
