import subprocess
from types import SimpleNamespace

import httplib2
import pytest
from google.auth import exceptions as auth_exceptions
from googleapiclient.errors import HttpError

from gcp_iam import fetcher
from gcp_iam.errors import (
    REMEDIATION,
    AuthenticationFailure,
    ExternalToolFailure,
    TransportFailure,
)
from gcp_iam.fetcher import CatalogFetcher, GcloudServiceLister, parse_service_csv

from conftest import FakeLister, api_role, make_fetcher


def http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b"{}")


def test_fetch_all_roles_follows_pages():
    f = make_fetcher(
        [
            [api_role("a.admin", "A Admin", description="all of a", stage="GA")],
            [api_role("b.viewer"), api_role("c.viewer", deleted=True)],
        ]
    )
    roles = f.fetch_all_roles()
    assert [role.name for role in roles] == ["a.admin", "b.viewer", "c.viewer"]
    assert roles[0].title == "A Admin"
    assert roles[0].description == "all of a"
    assert roles[0].stage == "GA"
    assert roles[2].deleted is True

    calls = f.service.roles().calls
    assert len(calls) == 2
    assert calls[0].kwargs == {"view": "FULL", "showDeleted": False, "pageSize": 1000}
    assert calls[1].kwargs["pageToken"] == "1"


def test_fetch_all_roles_empty_catalog():
    assert make_fetcher([]).fetch_all_roles() == []


def test_page_size_is_capped():
    assert CatalogFetcher(service=object(), page_size=5000).page_size == 1000
    assert CatalogFetcher(service=object(), page_size=10).page_size == 10


def test_fetch_role_permissions_adds_prefix():
    f = make_fetcher([], {"roles/storage.viewer": ["storage.objects.get"]})
    assert f.fetch_role_permissions("storage.viewer") == ["storage.objects.get"]
    assert f.fetch_role_permissions("roles/storage.viewer") == ["storage.objects.get"]
    assert [c.kwargs["name"] for c in f.service.roles().calls] == [
        "roles/storage.viewer",
        "roles/storage.viewer",
    ]


def test_fetch_role_permissions_missing_field():
    assert make_fetcher([]).fetch_role_permissions("empty") == []


@pytest.mark.parametrize("status", [401, 403])
def test_http_auth_errors(status):
    f = make_fetcher([[api_role("a")]], list_error=http_error(status))
    with pytest.raises(AuthenticationFailure) as exc_info:
        f.fetch_all_roles()
    assert REMEDIATION in str(exc_info.value)


def test_http_server_error_is_transport_failure():
    f = make_fetcher([], {"roles/a": http_error(500)})
    with pytest.raises(TransportFailure, match="HTTP 500"):
        f.fetch_role_permissions("a")


def test_refresh_error_is_authentication_failure():
    f = make_fetcher([[api_role("a")]], list_error=auth_exceptions.RefreshError("expired"))
    with pytest.raises(AuthenticationFailure):
        f.fetch_all_roles()


def test_missing_credentials_is_authentication_failure():
    def no_credentials():
        raise auth_exceptions.DefaultCredentialsError("no ADC")

    f = CatalogFetcher(credentials=no_credentials, lister=FakeLister([]))
    with pytest.raises(AuthenticationFailure, match="gcloud auth login --update-adc"):
        f.fetch_all_roles()


def test_network_error_is_transport_failure():
    f = make_fetcher([[api_role("a")]], list_error=ConnectionResetError("reset"))
    with pytest.raises(TransportFailure, match="reset"):
        f.fetch_all_roles()


def test_fetch_all_services_keeps_googleapis_only():
    f = make_fetcher(
        [],
        services=[
            ("compute.googleapis.com", "Compute Engine API"),
            ("partner.example.com", "Partner API"),
        ],
    )
    services = f.fetch_all_services()
    assert [(s.name, s.title, s.description) for s in services] == [
        ("compute.googleapis.com", "Compute Engine API", "Compute Engine API")
    ]


def test_parse_service_csv_skips_header_and_short_rows():
    text = (
        "name,title\n"
        "compute.googleapis.com,Compute Engine API\n"
        "bad\n"
        '"storage.googleapis.com","Cloud Storage, the API"\n'
    )
    assert parse_service_csv(text) == [
        ("compute.googleapis.com", "Compute Engine API"),
        ("storage.googleapis.com", "Cloud Storage, the API"),
    ]
    assert parse_service_csv("") == []


def test_parse_service_csv_malformed():
    with pytest.raises(ExternalToolFailure):
        parse_service_csv('name,title\n"unterminated,x\n')


def test_gcloud_command():
    lister = GcloudServiceLister()
    assert lister.command() == [
        "gcloud",
        "services",
        "list",
        "--available",
        "--format=csv(config.name,config.title)",
    ]
    assert lister.command("name:compute*")[-1] == "--filter=name:compute*"


def test_gcloud_lister_parses_output(monkeypatch):
    seen = {}

    def run(cmd, **kwargs):
        seen["cmd"] = cmd
        seen.update(kwargs)
        return SimpleNamespace(stdout="name,title\ncompute.googleapis.com,Compute\n")

    monkeypatch.setattr(fetcher.subprocess, "run", run)
    assert GcloudServiceLister().list_services() == [("compute.googleapis.com", "Compute")]
    assert seen["check"] is True
    assert seen["capture_output"] is True


def test_gcloud_missing(monkeypatch):
    def run(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(fetcher.subprocess, "run", run)
    with pytest.raises(ExternalToolFailure, match="not found"):
        GcloudServiceLister().list_services()


def test_gcloud_nonzero_exit(monkeypatch):
    def run(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd, output="", stderr="permission denied\n")

    monkeypatch.setattr(fetcher.subprocess, "run", run)
    with pytest.raises(ExternalToolFailure, match="permission denied"):
        GcloudServiceLister().list_services()
