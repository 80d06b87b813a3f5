"""Per-stack declarations: packages, step tables, build markers and site templates.

Each supported stack (``laravel``, ``php``, ``flask``, ``react`` and ``jsp``)
is described as data so the builder, environment preparer and activator share
one source of truth. Step tables are planned after the source is fetched and
shared state is linked, so conditions can inspect the checkout.
"""
from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping
from pathlib import Path

from ..config import AppConfig
from .errors import BuildVerificationError, DependencyInstallError
from .layout import DomainLayout
from .models import BuildStep, StepPolicy

FATAL = StepPolicy.FATAL
BEST_EFFORT = StepPolicy.BEST_EFFORT

PHP_STACKS = {"laravel", "php"}

LARAVEL_STORAGE_DIRS = (
    "storage/app/public",
    "storage/framework/cache/data",
    "storage/framework/sessions",
    "storage/framework/views",
    "storage/logs",
)

_APP_KEY_RE = re.compile(r"^\s*APP_KEY\s*=\s*(?P<value>.*)$", re.MULTILINE)
_ENV_LINE_RE = re.compile(
    r"^\s*(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=(?P<value>.*)$"
)


# ----------------------------------------------------------------------
# Environment preparation
# ----------------------------------------------------------------------
def required_packages(config: AppConfig) -> list[str]:
    """Return the apt packages the stack needs, including ``packages.extra``."""
    packages = ["git", "nginx", "acl"]
    if config.tls.enabled:
        packages.extend(["certbot", "python3-certbot-nginx"])

    stack = config.stack
    if stack in PHP_STACKS:
        ver = config.php.version
        packages.extend(
            [
                f"php{ver}-fpm",
                f"php{ver}-cli",
                f"php{ver}-mbstring",
                f"php{ver}-xml",
                f"php{ver}-curl",
                f"php{ver}-zip",
                "unzip",
                "composer",
            ]
        )
        if stack == "laravel":
            packages.extend([f"php{ver}-bcmath", f"php{ver}-intl", f"php{ver}-mysql", f"php{ver}-gd"])
            if config.database.provision:
                packages.append("mysql-server")
        if config.php.build_assets:
            packages.extend(["nodejs", "npm"])
    elif stack == "flask":
        packages.extend(["python3", "python3-pip", "python3-venv"])
    elif stack == "react":
        packages.extend(["nodejs", "npm"])
    elif stack == "jsp":
        packages.extend([config.jsp.tomcat_service, "default-jdk"])
        if config.jsp.build:
            packages.append("maven")

    packages.extend(config.packages.extra)
    return list(dict.fromkeys(packages))


def services_to_enable(config: AppConfig) -> list[str]:
    """Return system services that should be enabled and running."""
    services = ["nginx"] if config.nginx.enabled else []
    if config.stack in PHP_STACKS:
        services.append(config.php.fpm_service)
    if config.stack == "laravel" and config.database.provision:
        services.append("mysql")
    if config.stack == "jsp":
        services.append(config.jsp.tomcat_service)
    return services


def shared_seed_dirs(config: AppConfig) -> tuple[str, ...]:
    """Return directories to pre-create inside ``shared/`` for the stack."""
    if config.stack == "laravel" and any(item.path == "storage" for item in config.shared_items):
        return LARAVEL_STORAGE_DIRS
    return ()


# ----------------------------------------------------------------------
# Step tables
# ----------------------------------------------------------------------
def plan_steps(
    config: AppConfig,
    release_path: Path,
    *,
    backup: Callable[[Path], None] | None = None,
    provision_database: Callable[[Path], None] | None = None,
) -> list[BuildStep]:
    """Return the ordered steps to run for ``config.stack`` inside *release_path*.

    Raises :class:`DependencyInstallError` when a required manifest or build
    script is missing from the checkout.
    """
    stack = config.stack
    if stack in PHP_STACKS:
        return _php_steps(
            config, release_path, backup=backup, provision_database=provision_database
        )
    if stack == "flask":
        return _flask_steps(config, release_path)
    if stack == "react":
        return _react_steps(config, release_path)
    if stack == "jsp":
        return _jsp_steps(config, release_path)
    raise DependencyInstallError(f"Unsupported stack '{stack}'.", step="plan")


def _php_steps(
    config: AppConfig,
    release_path: Path,
    *,
    backup: Callable[[Path], None] | None,
    provision_database: Callable[[Path], None] | None = None,
) -> list[BuildStep]:
    steps: list[BuildStep] = []
    laravel = config.stack == "laravel"
    php = config.php

    if (release_path / "composer.json").is_file():
        steps.append(
            BuildStep(
                name="composer.install",
                policy=FATAL,
                argv=(
                    php.composer_bin,
                    "install",
                    "--no-dev",
                    "--prefer-dist",
                    "--no-interaction",
                    "--optimize-autoloader",
                ),
                condition="composer.json present",
                timeout_kind="install",
            )
        )
    elif laravel:
        raise DependencyInstallError(
            "composer.json is missing; a Laravel release cannot be installed.",
            step="composer.install",
        )

    if laravel:
        artisan = (php.php_bin, php.artisan)
        if config.database.provision and provision_database is not None:
            steps.append(
                BuildStep(
                    name="mysql.provision",
                    policy=BEST_EFFORT,
                    action=provision_database,
                    condition="database.provision",
                )
            )
        if _app_key_missing(release_path / ".env"):
            steps.append(
                BuildStep(
                    name="artisan.key_generate",
                    policy=BEST_EFFORT,
                    argv=(*artisan, "key:generate", "--force"),
                    condition=".env has empty APP_KEY",
                )
            )
        for cache in ("config", "route", "view"):
            steps.append(
                BuildStep(
                    name=f"artisan.{cache}_cache",
                    policy=BEST_EFFORT,
                    argv=(*artisan, f"{cache}:cache"),
                )
            )
        steps.append(
            BuildStep(
                name="artisan.storage_link",
                policy=BEST_EFFORT,
                argv=(*artisan, "storage:link"),
            )
        )
        if config.run_migrations:
            if backup is not None:
                steps.append(
                    BuildStep(
                        name="shared.backup",
                        policy=BEST_EFFORT,
                        action=backup,
                        condition="run_migrations",
                    )
                )
            steps.append(
                BuildStep(
                    name="artisan.migrate",
                    policy=FATAL,
                    argv=(*artisan, "migrate", "--force"),
                    condition="run_migrations",
                    timeout_kind="install",
                )
            )

    package_json = release_path / "package.json"
    if php.build_assets and package_json.is_file():
        steps.append(
            BuildStep(
                name="npm.install",
                policy=FATAL,
                argv=("npm", "install", "--no-audit", "--no-fund"),
                condition="package.json present",
                timeout_kind="install",
            )
        )
        scripts = read_package_scripts(package_json)
        script = "build" if "build" in scripts else "prod" if "prod" in scripts else None
        if script is not None:
            steps.append(
                BuildStep(
                    name="npm.build",
                    policy=BEST_EFFORT,
                    argv=("npm", "run", script),
                    condition=f"package.json defines '{script}'",
                    timeout_kind="install",
                )
            )
    return steps


def _flask_steps(config: AppConfig, release_path: Path) -> list[BuildStep]:
    python = config.python
    requirements = release_path / python.requirements
    if not requirements.is_file():
        raise DependencyInstallError(
            f"{python.requirements} is missing; cannot install Python dependencies.",
            step="pip.requirements",
        )
    pip = str(release_path / "venv" / "bin" / "pip")
    return [
        BuildStep(
            name="venv.create",
            policy=FATAL,
            argv=(python.python_bin, "-m", "venv", "venv"),
        ),
        BuildStep(
            name="pip.upgrade",
            policy=BEST_EFFORT,
            argv=(pip, "install", "--upgrade", "pip"),
            timeout_kind="install",
        ),
        BuildStep(
            name="pip.gunicorn",
            policy=FATAL,
            argv=(pip, "install", "gunicorn"),
            timeout_kind="install",
        ),
        BuildStep(
            name="pip.requirements",
            policy=FATAL,
            argv=(pip, "install", "-r", python.requirements),
            condition=f"{python.requirements} present",
            timeout_kind="install",
        ),
    ]


def _react_steps(config: AppConfig, release_path: Path) -> list[BuildStep]:
    package_json = release_path / "package.json"
    if not package_json.is_file():
        raise DependencyInstallError(
            "package.json is missing; cannot install Node dependencies.",
            step="node.install",
        )
    manager = detect_package_manager(release_path, config.node.package_manager)
    if manager == "yarn":
        install = ("yarn", "install", "--frozen-lockfile")
    elif manager == "pnpm":
        install = ("pnpm", "install", "--frozen-lockfile")
    elif (release_path / "package-lock.json").is_file():
        install = ("npm", "ci", "--legacy-peer-deps")
    else:
        install = ("npm", "install", "--legacy-peer-deps")

    scripts = read_package_scripts(package_json)
    env_script = f"build:{config.environment}"
    if env_script in scripts:
        script = env_script
    elif "build" in scripts:
        script = "build"
    else:
        raise DependencyInstallError(
            f"package.json defines neither '{env_script}' nor 'build' scripts.",
            step="node.build",
        )
    return [
        BuildStep(
            name="node.install",
            policy=FATAL,
            argv=install,
            condition=f"package manager {manager}",
            timeout_kind="install",
        ),
        BuildStep(
            name="node.build",
            policy=FATAL,
            argv=(manager, "run", script),
            condition=f"script '{script}'",
            timeout_kind="install",
            env={"NODE_ENV": "production"},
        ),
    ]


def _jsp_steps(config: AppConfig, release_path: Path) -> list[BuildStep]:
    if config.jsp.build and (release_path / "pom.xml").is_file():
        return [
            BuildStep(
                name="maven.package",
                policy=FATAL,
                argv=("mvn", "-q", "-DskipTests", "package"),
                condition="pom.xml present",
                timeout_kind="install",
            )
        ]
    return []


def detect_package_manager(release_path: Path, configured: str = "auto") -> str:
    """Return the Node package manager, inferred from lockfiles when ``auto``."""
    if configured != "auto":
        return configured
    if (release_path / "yarn.lock").is_file():
        return "yarn"
    if (release_path / "pnpm-lock.yaml").is_file():
        return "pnpm"
    return "npm"


def read_package_scripts(package_json: Path) -> Mapping[str, object]:
    """Return the ``scripts`` mapping from *package_json* (empty when unreadable)."""
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise DependencyInstallError(
            f"Cannot read {package_json.name}: {exc}", step="node.manifest"
        ) from exc
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return scripts if isinstance(scripts, dict) else {}


def _app_key_missing(env_file: Path) -> bool:
    try:
        content = env_file.read_text(encoding="utf-8")
    except OSError:
        return False
    match = _APP_KEY_RE.search(content)
    if match is None:
        return True
    return match.group("value").strip().strip("\"'") == ""


def read_env_values(env_file: Path) -> dict[str, str]:
    """Return the ``KEY=value`` assignments in *env_file* (empty when unreadable)."""
    try:
        content = env_file.read_text(encoding="utf-8")
    except OSError:
        return {}
    values: dict[str, str] = {}
    for line in content.splitlines():
        match = _ENV_LINE_RE.match(line)
        if match:
            values[match.group("key")] = match.group("value").strip().strip("\"'")
    return values


def update_env_values(env_file: Path, updates: Mapping[str, str]) -> None:
    """Set *updates* in *env_file* in place, appending keys it does not define yet.

    The file is rewritten through any symlink so a shared ``.env`` keeps its
    inode, owner and mode.
    """
    try:
        lines = env_file.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        lines = []
    pending = dict(updates)
    output: list[str] = []
    for line in lines:
        match = _ENV_LINE_RE.match(line)
        key = match.group("key") if match else None
        if key is not None and key in pending:
            output.append(f"{key}={_env_quote(pending.pop(key))}")
        else:
            output.append(line)
    output.extend(f"{key}={_env_quote(value)}" for key, value in pending.items())
    env_file.write_text("\n".join(output) + "\n", encoding="utf-8")


def database_env(config: AppConfig, password: str) -> dict[str, str]:
    """Return the Laravel ``DB_*`` settings for the provisioned database."""
    database = config.database
    host = "127.0.0.1" if database.host == "localhost" else database.host
    return {
        "DB_CONNECTION": "mysql",
        "DB_HOST": host,
        "DB_PORT": "3306",
        "DB_DATABASE": database.name,
        "DB_USERNAME": database.user,
        "DB_PASSWORD": password,
    }


def _env_quote(value: str) -> str:
    if not re.search(r"[\s#\"'$\\]", value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


# ----------------------------------------------------------------------
# Build markers
# ----------------------------------------------------------------------
def detect_built_output(config: AppConfig, release_path: Path) -> Path:
    """Return the directory ``current`` should point at for *release_path*."""
    if config.stack != "react":
        return release_path
    configured = config.node.build_output_dir
    if configured:
        return release_path / configured
    for candidate in ("dist", "build"):
        if (release_path / candidate / "index.html").is_file():
            return release_path / candidate
    return release_path / "dist"


def verify_build(config: AppConfig, release_path: Path) -> Path:
    """Check the stack's build marker and return the served output directory."""
    stack = config.stack
    output = detect_built_output(config, release_path)
    if stack == "laravel":
        missing = [
            name for name in ("artisan", "vendor/autoload.php") if not (release_path / name).exists()
        ]
        if missing:
            raise BuildVerificationError(f"Laravel build incomplete; missing {', '.join(missing)}.")
    elif stack == "php":
        if not any((release_path / name).is_file() for name in ("index.php", "public/index.php")):
            raise BuildVerificationError("No index.php or public/index.php found in release.")
    elif stack == "flask":
        if not (release_path / "venv" / "bin" / "gunicorn").exists():
            raise BuildVerificationError("venv/bin/gunicorn is missing after install.")
    elif stack == "react":
        if not (output / "index.html").is_file():
            raise BuildVerificationError(
                f"Build output {output.relative_to(release_path)}/index.html not found."
            )
    elif stack == "jsp":
        war = release_path / config.jsp.war_path
        if not war.is_file():
            raise BuildVerificationError(f"WAR file {config.jsp.war_path} not found in release.")
    return output


# ----------------------------------------------------------------------
# Externally-facing configuration
# ----------------------------------------------------------------------
def nginx_template(config: AppConfig) -> str:
    """Return the nginx site template for the stack."""
    if config.stack in PHP_STACKS:
        return "nginx/php.conf.j2"
    if config.stack == "react":
        return "nginx/static.conf.j2"
    return "nginx/proxy.conf.j2"


def nginx_context(
    config: AppConfig,
    layout: DomainLayout,
    release_path: Path,
    server_names: list[str],
) -> dict[str, object]:
    """Return the template context for the domain's nginx site."""
    current = layout.current
    web_root = current
    if config.stack == "laravel" or (
        config.stack == "php" and (release_path / "public" / "index.php").is_file()
    ):
        web_root = current / "public"

    upstream = ""
    static_locations: list[dict[str, str]] = []
    if config.stack == "flask":
        upstream = f"http://127.0.0.1:{config.python.app_port}"
        static_locations = [
            {"url": "/static", "path": str(current / "static")},
            {"url": "/media", "path": str(current / "media")},
        ]
    elif config.stack == "jsp":
        upstream = f"http://127.0.0.1:{config.jsp.tomcat_port}/{config.jsp.app_name}/"

    return {
        "domain": config.domain,
        "server_names": server_names,
        "listen_port": config.nginx.listen_port,
        "web_root": str(web_root),
        "log_dir": str(layout.logs_dir),
        "fpm_socket": str(config.php.socket_path),
        "upstream": upstream,
        "static_locations": static_locations,
    }


def uses_app_service(config: AppConfig) -> bool:
    """Return True when the stack runs its own systemd-managed process."""
    return config.stack == "flask"


def systemd_context(config: AppConfig, layout: DomainLayout) -> dict[str, object]:
    """Return the template context for the gunicorn unit."""
    return {
        "project_name": config.project_name,
        "domain": config.domain,
        "user": config.deploy_user,
        "group": config.deploy_group,
        "working_directory": str(layout.current),
        "workers": config.python.workers,
        "port": config.python.app_port,
        "app_module": config.python.app_module,
    }


def reload_hooks(config: AppConfig) -> list[str]:
    """Return the ordered post-activation hooks for the stack."""
    hooks: list[str] = []
    if config.nginx.enabled:
        hooks.append("nginx.reload")
    if config.stack in PHP_STACKS:
        hooks.append("php-fpm.reload")
    elif config.stack == "flask":
        hooks.append("app.restart")
    elif config.stack == "jsp":
        hooks.append("tomcat.deploy")
    return hooks


__all__ = [
    "LARAVEL_STORAGE_DIRS",
    "database_env",
    "detect_built_output",
    "detect_package_manager",
    "nginx_context",
    "nginx_template",
    "plan_steps",
    "read_env_values",
    "read_package_scripts",
    "reload_hooks",
    "required_packages",
    "services_to_enable",
    "shared_seed_dirs",
    "systemd_context",
    "update_env_values",
    "uses_app_service",
    "verify_build",
]
