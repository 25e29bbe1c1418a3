import os


def _set_default(key: str, value: str) -> None:
    os.environ.setdefault(key, value)


_set_default("TENANT_ID", "test-tenant")
_set_default("CLIENT_ID", "test-client")
_set_default("CLIENT_SECRET", "test-secret")
_set_default("DYNAMICS_RESOURCE_URL", "https://d365.example.com")
_set_default("LOG_LEVEL", "WARNING")
