import pytest

from selfcast.auth import Identity
from selfcast.content import ContentItem, Project
from selfcast.errors import RegenerationFailure
from selfcast.render import RenderResult
from selfcast.store import MemoryContentStore


class FakeBoundary:
    """Render boundary that records calls and can be told to fail."""

    def __init__(self):
        self.calls = []
        self.fail_with = None

    async def regenerate(self, path):
        self.calls.append(path)
        if self.fail_with is not None:
            raise self.fail_with
        return RenderResult(path=path)


class FailingOnceBoundary(FakeBoundary):
    def __init__(self):
        super().__init__()
        self.fail_with = RegenerationFailure("network down")

    async def regenerate(self, path):
        try:
            return await super().regenerate(path)
        finally:
            self.fail_with = None


@pytest.fixture
def store():
    return MemoryContentStore(
        [
            Project(
                project_id="acme",
                name="Acme",
                content=[ContentItem("rendered_title", "A")],
            ),
            Project(project_id="other", name="Other"),
        ]
    )


@pytest.fixture
def boundary():
    return FakeBoundary()


@pytest.fixture
def admin():
    return Identity(user_id="u-admin", role="admin")


@pytest.fixture
def owner():
    return Identity(user_id="u-acme", role="client", project_id="acme")


@pytest.fixture
def stranger():
    return Identity(user_id="u-other", role="client", project_id="other")
