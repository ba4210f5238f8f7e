import os
import tempfile

# Keep rotating log files out of the source tree during test runs.
os.environ.setdefault("APP_LOG_DIR", tempfile.mkdtemp(prefix="testgen-logs-"))

import pytest

from testgen.models.generation import ChangedFile, FileContext, PullRequestContext
from testgen.queue.models import (
    PullRequestEndpoint,
    PullRequestInfo,
    PullRequestPayload,
    RepositoryInfo,
    WebhookEvent,
)


def make_payload(number: int = 7, *, action: str = "opened") -> PullRequestPayload:
    return PullRequestPayload(
        installation_id=42,
        repository=RepositoryInfo(id=1, full_name="octo/widgets", owner="octo", name="widgets"),
        action=action,
        pull_request=PullRequestInfo(
            number=number,
            title="Add pricing service",
            body="Adds discounts",
            head=PullRequestEndpoint(ref="feature/pricing", sha="h" * 40),
            base=PullRequestEndpoint(ref="main", sha="b" * 40),
        ),
    )


def make_event(number: int = 7, delivery_id: str = "delivery-1") -> WebhookEvent:
    payload = make_payload(number)
    return WebhookEvent(
        delivery_id=delivery_id,
        event_type="pull_request",
        action=payload.action,
        payload=payload,
    )


@pytest.fixture
def payload() -> PullRequestPayload:
    return make_payload()


@pytest.fixture
def event() -> WebhookEvent:
    return make_event()


@pytest.fixture
def pr_context() -> PullRequestContext:
    return PullRequestContext(
        repository="octo/widgets",
        pr_number=7,
        title="Add pricing service",
        head_ref="feature/pricing",
        head_sha="h" * 40,
        base_sha="b" * 40,
        modified_files=[
            FileContext(
                path="app/services/pricing_service.py",
                status="modified",
                change_count=12,
                content="class PricingService:\n    def total(self):\n        return 1\n",
                type_names=["PricingService"],
                callable_names=["total"],
            )
        ],
    )


@pytest.fixture
def changed_file() -> ChangedFile:
    return ChangedFile(path="app/services/pricing_service.py", status="modified", change_count=12)
