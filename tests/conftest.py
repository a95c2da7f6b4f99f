import json

import httpx
import pytest

from autoflow.config import AutoflowConfig, DispatchConfig, SecurityConfig
from autoflow.engine import Engine
from autoflow.persistence import InMemoryOrchestrationRepository
from autoflow.persistence.models import IdentityContext, Workflow


class RemoteHost:
    """Stand-in for the remote execution host behind ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.body = "accepted"
        self.error: Exception | None = None
        self.fail_workflows: set[str] = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.fail_workflows:
            if json.loads(request.content)["workflow"] in self.fail_workflows:
                return httpx.Response(500, text="boom")
        return httpx.Response(self.status_code, text=self.body)


@pytest.fixture
def repo():
    return InMemoryOrchestrationRepository()


@pytest.fixture
def remote():
    return RemoteHost()


@pytest.fixture
def config():
    return AutoflowConfig(
        dispatch=DispatchConfig(
            agent_base_url="http://agent.test", external_token="external-secret"
        ),
        security=SecurityConfig(
            webhook_token="hook-secret", capability_secret="capability-secret"
        ),
    )


@pytest.fixture
def engine(config, repo, remote):
    client = httpx.AsyncClient(transport=httpx.MockTransport(remote.handler))
    return Engine(config, repo, http_client=client)


@pytest.fixture
def identity():
    return IdentityContext(
        user_id="user-1", organization_id="org-1", member_id="member-1", role="admin"
    )


@pytest.fixture
def make_workflow(repo):
    async def _make(**overrides) -> Workflow:
        fields = {
            "organization_id": "org-1",
            "member_id": "member-1",
            "name": "daily digest",
            "allowed_actions": ["send_message", "create_todo"],
            "model": "gpt-test",
        }
        fields.update(overrides)
        workflow = Workflow(**fields)
        await repo.save_workflow(workflow)
        return workflow

    return _make
