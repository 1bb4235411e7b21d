"""Read-only access to the upstream IAM role catalog and the service catalog.

Roles and permissions come from the IAM v1 API through the discovery client.
Services come from a `ServiceLister`, by default the `gcloud` CLI.
"""

import csv
import io
import logging
import subprocess
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from typing import Any, Protocol

import google.auth
import httplib2
from google.auth import exceptions as auth_exceptions
from googleapiclient import discovery
from googleapiclient.errors import HttpError

from gcp_iam.config import MAX_PAGE_SIZE
from gcp_iam.errors import (
    AuthenticationFailure,
    ExternalToolFailure,
    TransportFailure,
)
from gcp_iam.models import Role, Service, add_role_prefix, strip_role_prefix

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
SERVICE_SUFFIX = ".googleapis.com"

type CredentialsProvider = Callable[[], Any]


def default_credentials() -> Any:
    credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
    return credentials


@contextmanager
def upstream(operation: str) -> Iterator[None]:
    """Translate client library errors raised inside the block."""
    try:
        yield
    except (
        auth_exceptions.DefaultCredentialsError,
        auth_exceptions.RefreshError,
    ) as exc:
        raise AuthenticationFailure(
            f"Authentication failed accessing Google Cloud IAM API ({operation})."
        ) from exc
    except HttpError as exc:
        if exc.status_code in (401, 403):
            raise AuthenticationFailure(
                f"Authentication failed accessing Google Cloud IAM API ({operation})."
            ) from exc
        raise TransportFailure(f"Failed to {operation}: HTTP {exc.status_code}") from exc
    except (auth_exceptions.TransportError, httplib2.HttpLib2Error, OSError) as exc:
        raise TransportFailure(f"Failed to {operation}: {exc}") from exc


def role_from_api(record: dict) -> Role:
    return Role(
        name=strip_role_prefix(record["name"]),
        title=record.get("title", ""),
        description=record.get("description", ""),
        stage=record.get("stage", ""),
        deleted=bool(record.get("deleted", False)),
    )


class ServiceLister(Protocol):
    def list_services(self, filter: str | None = None) -> Iterable[tuple[str, str]]: ...


def parse_service_csv(text: str) -> list[tuple[str, str]]:
    try:
        rows = list(csv.reader(io.StringIO(text), strict=True))
    except csv.Error as exc:
        raise ExternalToolFailure(f"Failed to parse CSV output: {exc}") from exc
    return [(row[0], row[1]) for row in rows[1:] if len(row) >= 2]


class GcloudServiceLister:
    """Lists available services by shelling out to `gcloud services list`."""

    def __init__(self, executable: str = "gcloud") -> None:
        self.executable = executable

    def command(self, filter: str | None = None) -> list[str]:
        cmd = [
            self.executable,
            "services",
            "list",
            "--available",
            "--format=csv(config.name,config.title)",
        ]
        if filter:
            cmd.append(f"--filter={filter}")
        return cmd

    def list_services(self, filter: str | None = None) -> list[tuple[str, str]]:
        cmd = self.command(filter)
        logger.debug("Running %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except FileNotFoundError as exc:
            raise ExternalToolFailure(f"{self.executable} not found on PATH") from exc
        except subprocess.CalledProcessError as exc:
            raise ExternalToolFailure(
                f"Failed to execute {self.executable} command: {exc.stderr.strip() or exc}"
            ) from exc
        return parse_service_csv(proc.stdout)


class CatalogFetcher:
    def __init__(
        self,
        credentials: CredentialsProvider = default_credentials,
        service: Any = None,
        lister: ServiceLister | None = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self.credentials = credentials
        self._service = service
        self.lister: ServiceLister = lister or GcloudServiceLister()
        self.page_size = min(page_size, MAX_PAGE_SIZE)

    @property
    def service(self) -> Any:
        if self._service is None:
            with upstream("create IAM service"):
                self._service = discovery.build(
                    "iam",
                    "v1",
                    credentials=self.credentials(),
                    cache_discovery=False,
                )
        return self._service

    def fetch_all_roles(self) -> list[Role]:
        roles: list[Role] = []
        with upstream("list IAM roles"):
            api = self.service.roles()
            request = api.list(view="FULL", showDeleted=False, pageSize=self.page_size)
            while request is not None:
                response = request.execute()
                page = response.get("roles", [])
                logger.debug("Fetched page of %d roles", len(page))
                roles.extend(role_from_api(record) for record in page)
                request = api.list_next(previous_request=request, previous_response=response)
        return roles

    def fetch_role_permissions(self, name: str) -> list[str]:
        with upstream(f"get permissions for role {strip_role_prefix(name)}"):
            role = self.service.roles().get(name=add_role_prefix(name)).execute()
        return list(role.get("includedPermissions", []))

    def fetch_all_services(self, filter: str | None = None) -> list[Service]:
        return [
            Service(name=name, title=title, description=title)
            for name, title in self.lister.list_services(filter)
            if name.endswith(SERVICE_SUFFIX)
        ]
