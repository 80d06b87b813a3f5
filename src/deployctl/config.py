"""Configuration loader for deployctl.

Configuration is resolved once at startup from several layers, later layers
winning over earlier ones:

1. Built-in defaults.
2. ``/etc/deployctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``DEPLOYCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DEPLOYCTL_DOMAIN=shop.example.com
    export DEPLOYCTL_TLS__ENABLED=true
    export DEPLOYCTL_SHARED_ITEMS=".env,storage,public/uploads"

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and is fully validated before any command touches the host.
"""
from __future__ import annotations

import os
import pwd
import re
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Literal, cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load deployctl configuration. Install with "
        "`pip install deployctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "DEPLOYCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ALLOWED_STACKS = ("laravel", "php", "flask", "react", "jsp")
ALLOWED_PACKAGE_MANAGERS = {"auto", "npm", "yarn", "pnpm"}

STACK_SHARED_DEFAULTS: dict[str, str] = {
    "laravel": ".env,storage,public/uploads",
    "php": ".env,storage,public/uploads",
    "flask": ".env,instance,db.sqlite3",
    "react": ".env,public/uploads",
    "jsp": "",
}

_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)
_PROJECT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@-]*$")
_DB_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


SharedKind = Literal["file", "dir"]


@dataclass(frozen=True)
class SharedItem:
    """A path that persists across releases under ``shared/``."""

    path: str
    kind: SharedKind

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"path": self.path, "type": self.kind}


@dataclass(frozen=True)
class PackagesConfig:
    """System package installation behaviour."""

    install: bool = True
    update: bool = False
    extra: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"install": self.install, "update": self.update, "extra": list(self.extra)}


@dataclass(frozen=True)
class AccountsConfig:
    """Deploy account provisioning behaviour."""

    create: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"create": self.create}


@dataclass(frozen=True)
class TimeoutsConfig:
    """Upper bounds (seconds) for external commands."""

    fetch: float = 600.0
    install: float = 1800.0
    command: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"fetch": self.fetch, "install": self.install, "command": self.command}


@dataclass(frozen=True)
class GitConfig:
    """Version-control client settings."""

    git_bin: str = "git"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"git_bin": self.git_bin}


@dataclass(frozen=True)
class NginxConfig:
    """Reverse proxy integration settings."""

    enabled: bool = True
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    listen_port: int = 80
    nginx_bin: str = "nginx"
    include_www: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "listen_port": self.listen_port,
            "nginx_bin": self.nginx_bin,
            "include_www": self.include_www,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate issuance and inspection settings."""

    enabled: bool = False
    email: str | None = None
    certbot_bin: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    warn_expiry_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "email": self.email,
            "certbot_bin": self.certbot_bin,
            "live_dir": str(self.live_dir),
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"unit_dir": str(self.unit_dir), "systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class PHPConfig:
    """PHP / Composer / Laravel settings."""

    version: str = "8.1"
    php_bin: str = "php"
    composer_bin: str = "composer"
    fpm_socket: Path | None = None
    artisan: str = "artisan"
    build_assets: bool = True

    @property
    def fpm_service(self) -> str:
        """Return the php-fpm systemd service name."""
        return f"php{self.version}-fpm"

    @property
    def socket_path(self) -> Path:
        """Return the php-fpm socket, derived from the version when unset."""
        if self.fpm_socket is not None:
            return self.fpm_socket
        return Path(f"/run/php/php{self.version}-fpm.sock")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "php_bin": self.php_bin,
            "composer_bin": self.composer_bin,
            "fpm_socket": str(self.socket_path),
            "artisan": self.artisan,
            "build_assets": self.build_assets,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """MySQL provisioning for Laravel applications."""

    name: str
    user: str
    credentials_file: Path
    provision: bool = False
    password: str | None = None
    host: str = "localhost"
    mysql_bin: str = "mysql"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (the password is never echoed)."""
        return {
            "provision": self.provision,
            "name": self.name,
            "user": self.user,
            "password": "***" if self.password else None,
            "host": self.host,
            "mysql_bin": self.mysql_bin,
            "credentials_file": str(self.credentials_file),
        }


@dataclass(frozen=True)
class PythonConfig:
    """Flask / Gunicorn settings."""

    python_bin: str = "python3"
    app_module: str = "app:app"
    workers: int = 3
    app_port: int = 8000
    requirements: str = "requirements.txt"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "python_bin": self.python_bin,
            "app_module": self.app_module,
            "workers": self.workers,
            "app_port": self.app_port,
            "requirements": self.requirements,
        }


@dataclass(frozen=True)
class NodeConfig:
    """Node.js build settings."""

    version: str = "20"
    node_bin: str = "node"
    package_manager: str = "auto"
    build_output_dir: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "node_bin": self.node_bin,
            "package_manager": self.package_manager,
            "build_output_dir": self.build_output_dir,
        }


@dataclass(frozen=True)
class JSPConfig:
    """Tomcat / WAR settings."""

    app_name: str
    war_path: str
    build: bool = True
    tomcat_service: str = "tomcat9"
    webapps_dir: Path = Path("/var/lib/tomcat9/webapps")
    tomcat_port: int = 8080

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "app_name": self.app_name,
            "war_path": self.war_path,
            "build": self.build,
            "tomcat_service": self.tomcat_service,
            "webapps_dir": str(self.webapps_dir),
            "tomcat_port": self.tomcat_port,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for deployctl."""

    config_file: Path
    domain: str
    repository: str
    stack: str
    branch: str
    environment: str
    project_name: str
    base_dir: Path
    keep_releases: int
    shared_items: tuple[SharedItem, ...]
    run_migrations: bool
    deploy_user: str
    deploy_group: str
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    packages: PackagesConfig
    accounts: AccountsConfig
    timeouts: TimeoutsConfig
    git: GitConfig
    nginx: NginxConfig
    tls: TLSConfig
    systemd: SystemdConfig
    php: PHPConfig
    database: DatabaseConfig
    python: PythonConfig
    node: NodeConfig
    jsp: JSPConfig

    @property
    def domain_root(self) -> Path:
        """Return the per-domain directory under ``base_dir``."""
        return self.base_dir / self.domain

    @property
    def tls_email(self) -> str:
        """Return the certbot contact address."""
        return self.tls.email or f"admin@{self.domain}"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "domain": self.domain,
            "repository": self.repository,
            "stack": self.stack,
            "branch": self.branch,
            "environment": self.environment,
            "project_name": self.project_name,
            "base_dir": str(self.base_dir),
            "keep_releases": self.keep_releases,
            "shared_items": [item.to_dict() for item in self.shared_items],
            "run_migrations": self.run_migrations,
            "deploy_user": self.deploy_user,
            "deploy_group": self.deploy_group,
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "packages": self.packages.to_dict(),
            "accounts": self.accounts.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "git": self.git.to_dict(),
            "nginx": self.nginx.to_dict(),
            "tls": self.tls.to_dict(),
            "systemd": self.systemd.to_dict(),
            "php": self.php.to_dict(),
            "database": self.database.to_dict(),
            "python": self.python.to_dict(),
            "node": self.node.to_dict(),
            "jsp": self.jsp.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/deployctl/config.yml",
    "domain": None,
    "repository": None,
    "stack": None,
    "branch": "main",
    "environment": "production",
    "project_name": None,  # derived from domain when absent
    "base_dir": "/var/www",
    "keep_releases": 5,
    "shared_items": None,  # stack default when absent
    "run_migrations": False,
    "deploy_user": None,  # invoking user when absent
    "deploy_group": "www-data",
    "state_dir": "/var/lib/deployctl",
    "logs_dir": "/var/log/deployctl",
    "runtime_dir": "/run/deployctl",
    "templates_dir": "/etc/deployctl/templates",
    "lock_timeout": 30.0,
    "packages": {"install": True, "update": False, "extra": []},
    "accounts": {"create": False},
    "timeouts": {"fetch": 600, "install": 1800, "command": 300},
    "git": {"git_bin": "git"},
    "nginx": {
        "enabled": True,
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "listen_port": 80,
        "nginx_bin": "nginx",
        "include_www": True,
    },
    "tls": {
        "enabled": False,
        "email": None,
        "certbot_bin": "certbot",
        "live_dir": "/etc/letsencrypt/live",
        "warn_expiry_days": 30,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
    },
    "php": {
        "version": "8.1",
        "php_bin": "php",
        "composer_bin": "composer",
        "fpm_socket": None,
        "artisan": "artisan",
        "build_assets": True,
    },
    "database": {
        "provision": False,
        "name": None,  # derived from project_name when absent
        "user": None,
        "password": None,  # generated and kept in the shared .env when absent
        "host": "localhost",
        "mysql_bin": "mysql",
        "credentials_file": None,  # <state_dir>/<domain>.credentials when absent
    },
    "python": {
        "python_bin": "python3",
        "app_module": "app:app",
        "workers": 3,
        "app_port": 8000,
        "requirements": "requirements.txt",
    },
    "node": {
        "version": "20",
        "node_bin": "node",
        "package_manager": "auto",
        "build_output_dir": None,
    },
    "jsp": {
        "app_name": None,
        "war_path": None,
        "build": True,
        "tomcat_service": "tomcat9",
        "webapps_dir": "/var/lib/tomcat9/webapps",
        "tomcat_port": 8080,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    key: set(cast(Mapping[str, object], value).keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def parse_shared_items(value: object) -> tuple[SharedItem, ...]:
    """Parse shared item declarations into explicit :class:`SharedItem` entries.

    Accepts a comma-delimited string, a list of strings or a list of
    ``{"path": ..., "type": "file"|"dir"}`` mappings. Strings may carry an
    explicit tag (``storage:dir``, ``db.sqlite3:file``) or a trailing slash
    for directories. Untagged names fall back to the historical convention:
    a name containing a dot is a file, anything else is a directory.
    """
    if value is None:
        return ()
    if isinstance(value, str):
        raw_entries: Sequence[object] = value.split(",")
    elif isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        raw_entries = value
    else:
        raise ConfigError(
            f"shared_items must be a string or a list. Got {type(value).__name__}."
        )

    items: list[SharedItem] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw_entries):
        item = _parse_shared_entry(entry, f"shared_items[{index}]")
        if item is None:
            continue
        if item.path in seen:
            raise ConfigError(f"Duplicate shared item '{item.path}'.")
        seen.add(item.path)
        items.append(item)

    # Nested items would be linked through their parent's symlink.
    for item in items:
        nested = PurePosixPath(item.path)
        for other in items:
            if PurePosixPath(other.path) in nested.parents:
                raise ConfigError(
                    f"Shared item '{item.path}' is nested inside shared item '{other.path}'."
                )
    return tuple(items)


def _parse_shared_entry(entry: object, label: str) -> SharedItem | None:
    explicit: str | None = None
    if isinstance(entry, Mapping):
        mapping = _as_dict(entry, label)
        unknown = set(mapping.keys()) - {"path", "type"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown keys for {label}: {joined}.")
        raw_path = str(mapping.get("path") or "").strip()
        type_value = mapping.get("type")
        explicit = str(type_value).strip().lower() if type_value is not None else None
    elif isinstance(entry, str):
        raw_path = entry.strip()
        if ":" in raw_path:
            raw_path, _, tag = raw_path.rpartition(":")
            explicit = tag.strip().lower()
            raw_path = raw_path.strip()
    else:
        raise ConfigError(f"{label} must be a string or mapping.")

    if not raw_path:
        if explicit:
            raise ConfigError(f"{label} declares a type but no path.")
        return None

    if raw_path.endswith("/"):
        if explicit == "file":
            raise ConfigError(f"{label} '{raw_path}' ends with '/' but is tagged as a file.")
        explicit = "dir"
        raw_path = raw_path.rstrip("/")

    pure = PurePosixPath(raw_path)
    if pure.is_absolute() or ".." in pure.parts or not pure.parts:
        raise ConfigError(f"{label} must be a relative path inside the release: {raw_path!r}.")
    normalised = pure.as_posix()

    if explicit is None:
        kind: SharedKind = "file" if "." in pure.name else "dir"
    elif explicit in {"file", "f"}:
        kind = "file"
    elif explicit in {"dir", "directory", "d"}:
        kind = "dir"
    else:
        raise ConfigError(f"{label} has unsupported type {explicit!r}; expected file or dir.")
    return SharedItem(path=normalised, kind=kind)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    node_map = _as_dict(raw.get("node"), "node")
    manager = node_map.get("package_manager")
    if manager is not None and str(manager) not in ALLOWED_PACKAGE_MANAGERS:
        allowed = ", ".join(sorted(ALLOWED_PACKAGE_MANAGERS))
        raise ConfigError(f"Unsupported node.package_manager '{manager}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    domain = _require_text(raw.get("domain"), "domain")
    if not _DOMAIN_RE.match(domain):
        raise ConfigError(f"domain '{domain}' is not a valid host name.")
    repository = _require_text(raw.get("repository"), "repository")
    stack = _require_text(raw.get("stack"), "stack").lower()
    if stack not in ALLOWED_STACKS:
        allowed = ", ".join(ALLOWED_STACKS)
        raise ConfigError(f"Unsupported stack '{stack}'. Allowed: {allowed}.")

    branch = _require_text(raw.get("branch"), "branch")
    environment = _require_text(raw.get("environment"), "environment")

    project_value = _optional_text(raw.get("project_name"), "project_name")
    project_name = project_value or domain.replace(".", "-")
    if not _PROJECT_RE.match(project_name):
        raise ConfigError(f"project_name '{project_name}' contains unsupported characters.")

    keep_releases = _expect_int(raw.get("keep_releases"), "keep_releases", default=5)
    if keep_releases < 1:
        raise ConfigError("keep_releases must be at least 1.")

    shared_raw = raw.get("shared_items")
    if shared_raw is None:
        shared_raw = STACK_SHARED_DEFAULTS[stack]
    shared_items = parse_shared_items(shared_raw)

    deploy_user = _optional_text(raw.get("deploy_user"), "deploy_user") or _invoking_user()
    deploy_group = _require_text(raw.get("deploy_group"), "deploy_group")

    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    packages_map = _as_dict(raw.get("packages"), "packages")
    packages = PackagesConfig(
        install=_expect_bool(packages_map.get("install"), "packages.install", default=True),
        update=_expect_bool(packages_map.get("update"), "packages.update", default=False),
        extra=tuple(
            str(item) for item in _as_sequence(packages_map.get("extra") or [], "packages.extra")
        ),
    )

    accounts_map = _as_dict(raw.get("accounts"), "accounts")
    accounts = AccountsConfig(
        create=_expect_bool(accounts_map.get("create"), "accounts.create", default=False),
    )

    timeouts_map = _as_dict(raw.get("timeouts"), "timeouts")
    timeouts = TimeoutsConfig(
        fetch=_expect_positive_float(timeouts_map.get("fetch"), "timeouts.fetch", default=600.0),
        install=_expect_positive_float(
            timeouts_map.get("install"), "timeouts.install", default=1800.0
        ),
        command=_expect_positive_float(
            timeouts_map.get("command"), "timeouts.command", default=300.0
        ),
    )

    git_map = _as_dict(raw.get("git"), "git")
    git = GitConfig(git_bin=_require_text(git_map.get("git_bin", "git"), "git.git_bin"))

    nginx_map = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        enabled=_expect_bool(nginx_map.get("enabled"), "nginx.enabled", default=True),
        sites_available=_to_path(nginx_map.get("sites_available")),
        sites_enabled=_to_path(nginx_map.get("sites_enabled")),
        listen_port=_expect_port(nginx_map.get("listen_port"), "nginx.listen_port", default=80),
        nginx_bin=_require_text(nginx_map.get("nginx_bin", "nginx"), "nginx.nginx_bin"),
        include_www=_expect_bool(nginx_map.get("include_www"), "nginx.include_www", default=True),
    )

    tls_map = _as_dict(raw.get("tls"), "tls")
    warn_days = _expect_int(tls_map.get("warn_expiry_days"), "tls.warn_expiry_days", default=30)
    if warn_days < 0:
        raise ConfigError("tls.warn_expiry_days must be non-negative.")
    tls = TLSConfig(
        enabled=_expect_bool(tls_map.get("enabled"), "tls.enabled", default=False),
        email=_optional_text(tls_map.get("email"), "tls.email"),
        certbot_bin=_require_text(tls_map.get("certbot_bin", "certbot"), "tls.certbot_bin"),
        live_dir=_to_path(tls_map.get("live_dir")),
        warn_expiry_days=warn_days,
    )

    systemd_map = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_map.get("unit_dir")),
        systemctl_bin=_require_text(
            systemd_map.get("systemctl_bin", "systemctl"), "systemd.systemctl_bin"
        ),
    )

    php_map = _as_dict(raw.get("php"), "php")
    fpm_socket_value = php_map.get("fpm_socket")
    php = PHPConfig(
        version=_require_text(php_map.get("version", "8.1"), "php.version"),
        php_bin=_require_text(php_map.get("php_bin", "php"), "php.php_bin"),
        composer_bin=_require_text(php_map.get("composer_bin", "composer"), "php.composer_bin"),
        fpm_socket=_to_path(fpm_socket_value) if fpm_socket_value else None,
        artisan=_require_text(php_map.get("artisan", "artisan"), "php.artisan"),
        build_assets=_expect_bool(php_map.get("build_assets"), "php.build_assets", default=True),
    )

    database_map = _as_dict(raw.get("database"), "database")
    default_db_name = re.sub(r"[^A-Za-z0-9_]", "_", project_name)
    db_name = _optional_text(database_map.get("name"), "database.name") or default_db_name[:64]
    db_user = _optional_text(database_map.get("user"), "database.user") or default_db_name[:32]
    for label, value in (("database.name", db_name), ("database.user", db_user)):
        if not _DB_IDENTIFIER_RE.match(value):
            raise ConfigError(f"{label} '{value}' may only contain letters, digits and '_'.")
    credentials_value = database_map.get("credentials_file")
    state_dir = _to_path(raw.get("state_dir"))
    database = DatabaseConfig(
        name=db_name,
        user=db_user,
        credentials_file=(
            _to_path(credentials_value)
            if credentials_value
            else state_dir / f"{domain.lower()}.credentials"
        ),
        provision=_expect_bool(
            database_map.get("provision"), "database.provision", default=False
        ),
        password=_optional_text(database_map.get("password"), "database.password"),
        host=_require_text(database_map.get("host", "localhost"), "database.host"),
        mysql_bin=_require_text(database_map.get("mysql_bin", "mysql"), "database.mysql_bin"),
    )

    python_map = _as_dict(raw.get("python"), "python")
    workers = _expect_int(python_map.get("workers"), "python.workers", default=3)
    if workers < 1:
        raise ConfigError("python.workers must be at least 1.")
    python = PythonConfig(
        python_bin=_require_text(python_map.get("python_bin", "python3"), "python.python_bin"),
        app_module=_require_text(python_map.get("app_module", "app:app"), "python.app_module"),
        workers=workers,
        app_port=_expect_port(python_map.get("app_port"), "python.app_port", default=8000),
        requirements=_require_text(
            python_map.get("requirements", "requirements.txt"), "python.requirements"
        ),
    )

    node_map = _as_dict(raw.get("node"), "node")
    output_dir = _optional_text(node_map.get("build_output_dir"), "node.build_output_dir")
    if output_dir is not None:
        pure = PurePosixPath(output_dir)
        if pure.is_absolute() or ".." in pure.parts:
            raise ConfigError("node.build_output_dir must be relative to the release.")
    node = NodeConfig(
        version=_require_text(node_map.get("version", "20"), "node.version").lstrip("v"),
        node_bin=_require_text(node_map.get("node_bin", "node"), "node.node_bin"),
        package_manager=str(node_map.get("package_manager") or "auto"),
        build_output_dir=output_dir,
    )

    jsp_map = _as_dict(raw.get("jsp"), "jsp")
    app_name = _optional_text(jsp_map.get("app_name"), "jsp.app_name") or project_name
    war_path = _optional_text(jsp_map.get("war_path"), "jsp.war_path") or (
        f"target/{app_name}.war"
    )
    jsp = JSPConfig(
        app_name=app_name,
        war_path=war_path,
        build=_expect_bool(jsp_map.get("build"), "jsp.build", default=True),
        tomcat_service=_require_text(
            jsp_map.get("tomcat_service", "tomcat9"), "jsp.tomcat_service"
        ),
        webapps_dir=_to_path(jsp_map.get("webapps_dir")),
        tomcat_port=_expect_port(jsp_map.get("tomcat_port"), "jsp.tomcat_port", default=8080),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        domain=domain.lower(),
        repository=repository,
        stack=stack,
        branch=branch,
        environment=environment,
        project_name=project_name,
        base_dir=_to_path(raw.get("base_dir")),
        keep_releases=keep_releases,
        shared_items=shared_items,
        run_migrations=_expect_bool(raw.get("run_migrations"), "run_migrations", default=False),
        deploy_user=deploy_user,
        deploy_group=deploy_group,
        state_dir=_to_path(raw.get("state_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=lock_timeout,
        packages=packages,
        accounts=accounts,
        timeouts=timeouts,
        git=git,
        nginx=nginx,
        tls=tls,
        systemd=systemd,
        php=php,
        database=database,
        python=python,
        node=node,
        jsp=jsp,
    )


def _invoking_user() -> str:
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:  # pragma: no cover - uid without passwd entry
        return str(os.getuid())


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_text(value: object, label: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a string. Got boolean {value!r}.")
    if isinstance(value, (str, int, float)):
        text = str(value).strip()
        return text or None
    raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")


def _require_text(value: object, label: str) -> str:
    text = _optional_text(value, label)
    if text is None:
        env_name = ENV_PREFIX + label.upper().replace(".", "__")
        raise ConfigError(
            f"{label} is required (set '{label}' in the config file or {env_name})."
        )
    return text


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off", ""}:
            return False
    if isinstance(value, int):
        return bool(value)
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "ALLOWED_STACKS",
    "AccountsConfig",
    "AppConfig",
    "ConfigError",
    "DatabaseConfig",
    "GitConfig",
    "JSPConfig",
    "NginxConfig",
    "NodeConfig",
    "PHPConfig",
    "PackagesConfig",
    "PythonConfig",
    "STACK_SHARED_DEFAULTS",
    "SharedItem",
    "SystemdConfig",
    "TLSConfig",
    "TimeoutsConfig",
    "load_config",
    "parse_shared_items",
]
