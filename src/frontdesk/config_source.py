"""
Tenant configuration sources.

A source is read-only from the engine's point of view. `generation()` returns a
value that changes whenever anything feeding a tenant's scenario pool changes,
which is how `ScenarioPoolCache` notices edits without a TTL.
"""

import re
import threading
from pathlib import Path
from typing import Dict, Hashable, Protocol, Tuple

import structlog
from pydantic import BaseModel, ValidationError

from src.frontdesk.errors import TenantConfigError
from src.frontdesk.models import ScenarioTemplate, TenantConfig

logger = structlog.get_logger(__name__)

_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


class ConfigSource(Protocol):
    def get_tenant(self, tenant_id: str) -> TenantConfig: ...

    def get_template(self, template_id: str) -> ScenarioTemplate: ...

    def generation(self, tenant_id: str) -> Hashable: ...


class InMemoryConfigSource:
    """Dict-backed source for tests and embedding. Every write bumps a generation."""

    def __init__(self) -> None:
        self._tenants: Dict[str, TenantConfig] = {}
        self._templates: Dict[str, ScenarioTemplate] = {}
        self._tenant_gen: Dict[str, int] = {}
        self._template_gen: Dict[str, int] = {}
        self._lock = threading.Lock()

    def put_tenant(self, tenant: TenantConfig) -> None:
        with self._lock:
            self._tenants[tenant.tenant_id] = tenant
            self._tenant_gen[tenant.tenant_id] = self._tenant_gen.get(tenant.tenant_id, 0) + 1

    def put_template(self, template: ScenarioTemplate) -> None:
        with self._lock:
            self._templates[template.id] = template
            self._template_gen[template.id] = self._template_gen.get(template.id, 0) + 1

    def get_tenant(self, tenant_id: str) -> TenantConfig:
        try:
            return self._tenants[tenant_id]
        except KeyError:
            raise TenantConfigError(f"Unknown tenant '{tenant_id}'") from None

    def get_template(self, template_id: str) -> ScenarioTemplate:
        try:
            return self._templates[template_id]
        except KeyError:
            raise TenantConfigError(f"Unknown scenario template '{template_id}'") from None

    def generation(self, tenant_id: str) -> Hashable:
        tenant = self._tenants.get(tenant_id)
        template_ids = tenant.template_ids if tenant else ()
        return (
            self._tenant_gen.get(tenant_id, 0),
            tuple(self._template_gen.get(t, 0) for t in template_ids),
        )


class FileConfigSource:
    """
    JSON files on disk:

        <root>/tenants/<tenant_id>.json
        <root>/templates/<template_id>.json

    Parsed models are memoized by file mtime; the generation is the tuple of
    mtimes of the tenant file and every template it references.
    """

    def __init__(self, root: str):
        self.root = Path(root)
        self._parsed: Dict[Path, Tuple[int, BaseModel]] = {}
        self._lock = threading.Lock()

    def _path(self, folder: str, ident: str, label: str) -> Path:
        if not _ID_PATTERN.fullmatch(ident or ""):
            raise TenantConfigError(f"Invalid {label} id")
        base = (self.root / folder).resolve()
        path = (base / f"{ident}.json").resolve()
        if path.parent != base:
            raise TenantConfigError(f"Invalid {label} id")
        return path

    def _tenant_path(self, tenant_id: str) -> Path:
        return self._path("tenants", tenant_id, "tenant")

    def _template_path(self, template_id: str) -> Path:
        return self._path("templates", template_id, "scenario template")

    def _load(self, path: Path, model: type, label: str):
        try:
            mtime = path.stat().st_mtime_ns
        except OSError:
            raise TenantConfigError(f"Unknown {label} '{path.stem}'") from None

        with self._lock:
            cached = self._parsed.get(path)
        if cached is not None and cached[0] == mtime:
            return cached[1]

        try:
            parsed = model.model_validate_json(path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.error("Invalid configuration file", path=str(path), error=str(e))
            raise TenantConfigError(f"Invalid {label} configuration '{path.stem}'") from e

        with self._lock:
            self._parsed[path] = (mtime, parsed)
        return parsed

    def get_tenant(self, tenant_id: str) -> TenantConfig:
        return self._load(self._tenant_path(tenant_id), TenantConfig, "tenant")

    def get_template(self, template_id: str) -> ScenarioTemplate:
        return self._load(self._template_path(template_id), ScenarioTemplate, "scenario template")

    def generation(self, tenant_id: str) -> Hashable:
        def _mtime(path: Path) -> int:
            try:
                return path.stat().st_mtime_ns
            except OSError:
                return 0

        tenant = self.get_tenant(tenant_id)
        return (
            _mtime(self._tenant_path(tenant_id)),
            tuple(_mtime(self._template_path(t)) for t in tenant.template_ids),
        )
