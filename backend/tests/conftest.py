import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# === 全局测试配置 ===
# 中文注释:
# 1. 在导入 app 之前固定环境变量：内存仓储 + 测试签名密钥 + 开启开发登录。
# 2. 每个测试都使用全新的内存仓储/文件存储/通知记录器，互不影响。
os.environ["SESSION_JWT_SECRET"] = "confflow-test-secret-with-enough-length-0123456789"
os.environ["CONFFLOW_REPOSITORY"] = "memory"
os.environ["APP_ENV"] = "development"
os.environ["CONFFLOW_DEV_LOGIN"] = "1"
os.environ.pop("SENTRY_DSN", None)
os.environ.pop("CONFFLOW_TRACKS", None)

from main import app  # noqa: E402

from confflow.core.security import create_identity_token  # noqa: E402
from confflow.models.manuscript import FileKind  # noqa: E402
from confflow.models.schemas import AuthorInput, ManuscriptFields  # noqa: E402
from confflow.models.user import Role, User  # noqa: E402
from confflow.repositories.factory import set_repository  # noqa: E402
from confflow.repositories.memory import InMemoryRepository  # noqa: E402
from confflow.schemas.token import IdentityClaims  # noqa: E402
from confflow.services.assignment_service import AssignmentService  # noqa: E402
from confflow.services.decision_service import DecisionService  # noqa: E402
from confflow.services.manuscript_service import ManuscriptService  # noqa: E402
from confflow.services.notification_service import set_dispatcher  # noqa: E402
from confflow.services.storage_service import InMemoryFileStore, set_file_store  # noqa: E402
from confflow.services.track_service import StaticTrackLookup, set_track_lookup  # noqa: E402
from confflow.services.user_service import UserService  # noqa: E402


class RecordingDispatcher:
    """记录所有生命周期事件，便于断言通知内容"""

    def __init__(self) -> None:
        self.events = []

    def notify(self, event) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def file_store() -> InMemoryFileStore:
    return InMemoryFileStore()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture(autouse=True)
def _isolated_backends(repo, file_store, dispatcher):
    set_repository(repo)
    set_file_store(file_store)
    set_dispatcher(dispatcher)
    set_track_lookup(StaticTrackLookup({}))
    yield
    set_repository(None)
    set_file_store(None)
    set_dispatcher(None)
    set_track_lookup(None)


@pytest_asyncio.fixture
async def client() -> AsyncGenerator:
    """
    提供一个异步测试客户端
    """
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


# === 用户/身份 ===


def claims_for(user: User) -> IdentityClaims:
    now = int(datetime.now(timezone.utc).timestamp())
    return IdentityClaims(
        sub=user.id,
        email=user.email,
        display_name=user.display_name,
        roles=frozenset(user.roles),
        iat=now,
        exp=now + 3600,
    )


def auth_headers(user: User) -> dict[str, str]:
    token, _ = create_identity_token(user=user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def users(repo) -> UserService:
    return UserService(repo)


@pytest.fixture
def make_user(users):
    def _make(email: str, *roles: Role, name: str | None = None) -> User:
        return users.register_user(email, name or email.split("@")[0], roles=set(roles) or None)

    return _make


@pytest.fixture
def author(make_user) -> User:
    return make_user("alice@uni.edu", Role.AUTHOR, name="Alice Author")


@pytest.fixture
def other_author(make_user) -> User:
    return make_user("bob@uni.edu", Role.AUTHOR, name="Bob Author")


@pytest.fixture
def editor(make_user) -> User:
    return make_user("ed@conf.org", Role.EDITOR, name="Eddie Editor")


@pytest.fixture
def chief(make_user) -> User:
    return make_user("chief@conf.org", Role.CHIEF_EDITOR, name="Chief Editor")


@pytest.fixture
def admin(make_user) -> User:
    return make_user("admin@conf.org", Role.ADMIN, name="Ada Admin")


@pytest.fixture
def reviewer1(make_user) -> User:
    return make_user("r1@lab.org", Role.REVIEWER, name="Reviewer One")


@pytest.fixture
def reviewer2(make_user) -> User:
    return make_user("r2@lab.org", Role.REVIEWER, name="Reviewer Two")


# === 服务 ===


@pytest.fixture
def manuscripts(repo, file_store, dispatcher) -> ManuscriptService:
    return ManuscriptService(repo, file_store=file_store, dispatcher=dispatcher, track_lookup=StaticTrackLookup({}))


@pytest.fixture
def assignments(repo, dispatcher) -> AssignmentService:
    return AssignmentService(repo, dispatcher=dispatcher)


@pytest.fixture
def decisions(repo, dispatcher) -> DecisionService:
    return DecisionService(repo, dispatcher=dispatcher)


def complete_fields(user: User, **overrides) -> ManuscriptFields:
    data = {
        "title": "Scalable Consensus for Edge Clusters",
        "abstract": "We study consensus protocols under intermittent connectivity.",
        "keywords": ["consensus", "edge"],
        "authors": [
            AuthorInput(
                name=user.display_name,
                email=user.email,
                affiliation="Uni",
                is_corresponding=True,
                user_id=user.id,
            )
        ],
    }
    data.update(overrides)
    return ManuscriptFields(**data)


@pytest.fixture
def make_draft(manuscripts):
    def _make(user: User, with_file: bool = True, **overrides):
        draft = manuscripts.create_draft(claims_for(user), complete_fields(user, **overrides))
        if with_file:
            draft = manuscripts.attach_file(
                draft.id,
                claims_for(user),
                kind=FileKind.MANUSCRIPT_ANONYMOUS,
                filename="paper.pdf",
                content=b"%PDF-1.7 anonymous body",
                content_type="application/pdf",
            )
        return draft

    return _make


@pytest.fixture
def make_submitted(manuscripts, make_draft):
    def _make(user: User, **overrides):
        draft = make_draft(user, **overrides)
        return manuscripts.submit_manuscript(draft.id, claims_for(user))

    return _make


@pytest.fixture
def make_under_review(make_submitted, assignments, editor):
    def _make(user: User, *reviewers: User):
        ms = make_submitted(user)
        rows = assignments.assign(ms.id, claims_for(editor), [r.id for r in reviewers])
        return ms.id, rows

    return _make


def future(days: int = 14):
    return (datetime.now(timezone.utc) + timedelta(days=days)).date()
