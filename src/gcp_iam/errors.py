REMEDIATION = "To fix authentication issues, run: gcloud auth login --update-adc"


class GcpIamError(Exception):
    pass


class CatalogError(GcpIamError):
    """An upstream catalog (IAM API or gcloud) could not be read."""


class AuthenticationFailure(CatalogError):
    def __init__(self, message: str) -> None:
        super().__init__(f"{message}\n{REMEDIATION}")


class TransportFailure(CatalogError):
    pass


class ExternalToolFailure(CatalogError):
    pass


class SyncFailure(GcpIamError):
    pass


class ConfigError(GcpIamError):
    pass


class StoreError(GcpIamError):
    """The local database could not be opened or its schema created."""
