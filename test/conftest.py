from dataclasses import dataclass, field

import pytest

from gcp_iam.fetcher import CatalogFetcher
from gcp_iam.store import Store


@dataclass
class FakeRequest:
    method: str
    kwargs: dict
    response: dict | None = None
    error: Exception | None = None

    def execute(self):
        if self.error is not None:
            raise self.error
        return self.response


@dataclass
class FakeRoles:
    """Stands in for `discovery.build("iam", "v1").roles()`."""

    pages: list[list[dict]]
    permissions: dict[str, list[str] | Exception] = field(default_factory=dict)
    list_error: Exception | None = None
    calls: list[FakeRequest] = field(default_factory=list)

    def list(self, **kwargs):
        return self._page(0, kwargs)

    def list_next(self, previous_request, previous_response):
        token = previous_response.get("nextPageToken")
        if token is None:
            return None
        return self._page(int(token), previous_request.kwargs | {"pageToken": token})

    def _page(self, index: int, kwargs: dict) -> FakeRequest:
        response = {"roles": self.pages[index]} if self.pages else {}
        if index + 1 < len(self.pages):
            response["nextPageToken"] = str(index + 1)
        request = FakeRequest("list", kwargs, response, self.list_error)
        self.calls.append(request)
        return request

    def get(self, name: str):
        result = self.permissions.get(name, [])
        if isinstance(result, Exception):
            request = FakeRequest("get", {"name": name}, error=result)
        else:
            request = FakeRequest(
                "get", {"name": name}, {"name": name, "includedPermissions": result}
            )
        self.calls.append(request)
        return request


@dataclass
class FakeIAM:
    fake_roles: FakeRoles

    def roles(self) -> FakeRoles:
        return self.fake_roles


@dataclass
class FakeLister:
    rows: list[tuple[str, str]]
    error: Exception | None = None

    def list_services(self, filter=None):
        if self.error is not None:
            raise self.error
        return list(self.rows)


def api_role(name: str, title: str = "", **extra) -> dict:
    return {"name": f"roles/{name}", "title": title or name, **extra}


def make_fetcher(
    pages: list[list[dict]],
    permissions: dict | None = None,
    services: list[tuple[str, str]] | None = None,
    **kwargs,
) -> CatalogFetcher:
    roles = FakeRoles(pages, permissions or {}, **kwargs)
    return CatalogFetcher(
        credentials=lambda: None,
        service=FakeIAM(roles),
        lister=FakeLister(services or []),
    )


@pytest.fixture
def store():
    with Store.open(":memory:") as store:
        yield store
