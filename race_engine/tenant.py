from flask import g, has_request_context, request


DEFAULT_TENANT_ID = "tenant-default"
TENANT_HEADER = "X-Tenant-Id"


def normalize_tenant_id(value: str | None) -> str | None:
    tenant_id = str(value or "").strip()
    return tenant_id or None


def current_tenant_id() -> str | None:
    if has_request_context():
        header_value = normalize_tenant_id(request.headers.get(TENANT_HEADER))
        if header_value:
            return header_value
    return normalize_tenant_id(getattr(g, "tenant_id", None))


def scoped_tenant_id(value: str | None = None) -> str:
    return normalize_tenant_id(value) or current_tenant_id() or DEFAULT_TENANT_ID
