from fastapi import APIRouter, Depends, File, Form, UploadFile

from confflow.api.v1.common import get_decision_service, get_manuscript_service, ok
from confflow.core.auth_utils import get_current_identity
from confflow.models.manuscript import FileKind
from confflow.models.schemas import ManuscriptFields, ManuscriptUpdateRequest
from confflow.schemas.token import IdentityClaims
from confflow.services.decision_service import DecisionService
from confflow.services.manuscript_service import ManuscriptService

router = APIRouter(prefix="/manuscripts", tags=["Manuscripts"])


@router.post("", status_code=201)
async def create_draft(
    payload: ManuscriptFields,
    identity: IdentityClaims = Depends(get_current_identity),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return ok(service.create_draft(identity, payload))


@router.get("")
async def list_manuscripts(
    identity: IdentityClaims = Depends(get_current_identity),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    """
    编辑/管理员：全部稿件；其余用户：自己拥有的 + 被指派审稿的稿件。
    """
    return ok(service.list_manuscripts(identity))


@router.get("/{manuscript_id}")
async def get_manuscript(
    manuscript_id: str,
    identity: IdentityClaims = Depends(get_current_identity),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return ok(service.get_manuscript_view(manuscript_id, identity))


@router.put("/{manuscript_id}")
async def update_draft(
    manuscript_id: str,
    payload: ManuscriptUpdateRequest,
    identity: IdentityClaims = Depends(get_current_identity),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return ok(service.update_draft(manuscript_id, identity, payload, expected_version=payload.version))


@router.delete("/{manuscript_id}")
async def discard_draft(
    manuscript_id: str,
    identity: IdentityClaims = Depends(get_current_identity),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    service.discard_draft(manuscript_id, identity)
    return ok({"id": manuscript_id, "deleted": True})


@router.post("/{manuscript_id}/files", status_code=201)
async def attach_file(
    manuscript_id: str,
    file: UploadFile = File(...),
    kind: FileKind = Form(FileKind.MANUSCRIPT_ANONYMOUS),
    identity: IdentityClaims = Depends(get_current_identity),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    content = await file.read()
    manuscript = service.attach_file(
        manuscript_id,
        identity,
        kind=kind,
        filename=file.filename or "",
        content=content,
        content_type=file.content_type or "",
    )
    return ok(manuscript)


@router.get("/{manuscript_id}/files/{file_id}/url")
async def get_file_url(
    manuscript_id: str,
    file_id: str,
    identity: IdentityClaims = Depends(get_current_identity),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    signed = service.get_file_url(manuscript_id, file_id, identity)
    return ok({"url": signed.url, "expires_in": signed.expires_in})


@router.post("/{manuscript_id}/submit")
async def submit_manuscript(
    manuscript_id: str,
    identity: IdentityClaims = Depends(get_current_identity),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return ok(service.submit_manuscript(manuscript_id, identity))


@router.post("/{manuscript_id}/resubmit")
async def resubmit_manuscript(
    manuscript_id: str,
    identity: IdentityClaims = Depends(get_current_identity),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return ok(service.resubmit_manuscript(manuscript_id, identity))


@router.get("/{manuscript_id}/decisions")
async def get_decision_history(
    manuscript_id: str,
    identity: IdentityClaims = Depends(get_current_identity),
    service: DecisionService = Depends(get_decision_service),
):
    return ok(service.get_decision_history(manuscript_id, identity))


@router.get("/{manuscript_id}/decisions/current")
async def get_current_decision(
    manuscript_id: str,
    identity: IdentityClaims = Depends(get_current_identity),
    service: DecisionService = Depends(get_decision_service),
):
    return ok(service.get_current_decision(manuscript_id, identity))
