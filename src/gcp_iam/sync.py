import logging
import sqlite3
from dataclasses import dataclass, field

from gcp_iam.errors import AuthenticationFailure, CatalogError, SyncFailure
from gcp_iam.fetcher import CatalogFetcher
from gcp_iam.store import Store

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    roles_fetched: int = 0
    roles_stored: int = 0
    roles_retired: int = 0
    refresh_attempted: int = 0
    refresh_succeeded: int = 0
    refresh_failed: list[str] = field(default_factory=list)
    permissions_stored: int = 0
    services_fetched: int = 0
    services_stored: int = 0
    services_error: str | None = None

    def lines(self) -> list[str]:
        lines = [
            f"Roles:       {self.roles_stored}/{self.roles_fetched} stored",
            f"Permissions: {self.refresh_succeeded}/{self.refresh_attempted} roles refreshed,"
            f" {self.permissions_stored} links stored",
        ]
        if self.roles_retired:
            lines.append(f"Retired:     {self.roles_retired} roles flagged as deleted")
        if self.services_fetched:
            lines.append(
                f"Services:    {self.services_stored}/{self.services_fetched} stored"
            )
        if self.services_error:
            lines.append(f"Services:    not updated ({self.services_error})")
        return lines


class Synchronizer:
    def __init__(self, store: Store, fetcher: CatalogFetcher) -> None:
        self.store = store
        self.fetcher = fetcher

    def sync_roles(self, report: SyncReport, retire: bool = False) -> None:
        try:
            roles = self.fetcher.fetch_all_roles()
        except AuthenticationFailure:
            raise
        except CatalogError as exc:
            raise SyncFailure(f"Failed to fetch GCP IAM roles: {exc}") from exc

        report.roles_fetched = len(roles)
        logger.info("Fetched %d roles from GCP", len(roles))
        for role in roles:
            try:
                self.store.upsert_role(role)
            except sqlite3.Error as exc:
                logger.warning("Failed to store role %s: %s", role.name, exc)
                continue
            report.roles_stored += 1

        if retire:
            report.roles_retired = self.store.retire_roles(role.name for role in roles)

    def refresh_role(self, name: str) -> int:
        permissions = self.fetcher.fetch_role_permissions(name)
        stored = 0
        for permission in permissions:
            try:
                self.store.upsert_permission(permission, name)
            except sqlite3.Error as exc:
                logger.warning(
                    "Failed to store permission %s for role %s: %s", permission, name, exc
                )
                continue
            stored += 1
        logger.debug("Stored %d/%d permissions for role %s", stored, len(permissions), name)
        return stored

    def refresh_permissions(self, report: SyncReport) -> None:
        worklist = self.store.roles_needing_permission_refresh()
        report.refresh_attempted = len(worklist)
        if not worklist:
            logger.info("No roles need permission updates")
            return

        logger.info("Updating permissions for %d roles", len(worklist))
        for i, role in enumerate(worklist, start=1):
            logger.info("Updating permissions for role %d/%d: %s", i, len(worklist), role.name)
            try:
                report.permissions_stored += self.refresh_role(role.name)
            except CatalogError as exc:
                logger.warning("Failed to update permissions for role %s: %s", role.name, exc)
                report.refresh_failed.append(role.name)
                continue
            report.refresh_succeeded += 1

    def sync_services(self, report: SyncReport) -> None:
        try:
            services = self.fetcher.fetch_all_services()
        except CatalogError as exc:
            raise SyncFailure(f"Failed to fetch Google Cloud services: {exc}") from exc

        report.services_fetched = len(services)
        logger.info("Fetched %d services from GCP", len(services))
        for service in services:
            try:
                self.store.upsert_service(service)
            except sqlite3.Error as exc:
                logger.warning("Failed to store service %s: %s", service.name, exc)
                continue
            report.services_stored += 1

    def run(self, services: bool = True, retire: bool = False) -> SyncReport:
        """Roles, then permissions, then services.

        The services pass is independent of the IAM catalog: its failure is
        recorded on the report and logged instead of failing the run.
        """
        report = SyncReport()
        self.sync_roles(report, retire=retire)
        self.refresh_permissions(report)
        if services:
            try:
                self.sync_services(report)
            except SyncFailure as exc:
                logger.warning("Skipping services: %s", exc)
                report.services_error = str(exc)
        return report
