"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from deployctl.config import AppConfig, ConfigError, SharedItem, load_config, parse_shared_items

REQUIRED = {
    "DEPLOYCTL_DOMAIN": "shop.example.com",
    "DEPLOYCTL_REPOSITORY": "https://git.example.com/acme/shop.git",
    "DEPLOYCTL_STACK": "laravel",
}


def test_load_config_defaults_with_required_values(tmp_path: Path) -> None:
    """Defaults apply once the required keys are present."""
    config = load_config(config_file=tmp_path / "missing.yml", env=dict(REQUIRED))

    assert isinstance(config, AppConfig)
    assert config.branch == "main"
    assert config.environment == "production"
    assert config.project_name == "shop-example-com"
    assert config.base_dir == Path("/var/www")
    assert config.domain_root == Path("/var/www/shop.example.com")
    assert config.keep_releases == 5
    assert config.run_migrations is False
    assert config.state_dir == Path("/var/lib/deployctl")
    assert config.nginx.enabled is True
    assert config.tls.enabled is False
    assert config.tls_email == "admin@shop.example.com"
    assert config.php.fpm_service == "php8.1-fpm"
    assert config.timeouts.install == 1800.0
    assert [item.path for item in config.shared_items] == [".env", "storage", "public/uploads"]
    assert config.stack == "laravel"


def test_missing_required_key_names_env_variable(tmp_path: Path) -> None:
    """A missing required key is reported with the environment variable to set."""
    env = dict(REQUIRED)
    del env["DEPLOYCTL_REPOSITORY"]

    with pytest.raises(ConfigError) as excinfo:
        load_config(config_file=tmp_path / "missing.yml", env=env)

    assert "DEPLOYCTL_REPOSITORY" in str(excinfo.value)


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "deployctl.yml"
    cfg.write_text(
        "domain: api.example.org\n"
        "repository: git@example.org:acme/api.git\n"
        "stack: flask\n"
        "keep_releases: 3\n"
        "python:\n"
        "  app_port: 8100\n"
        "  workers: 5\n"
        "tls:\n"
        "  enabled: true\n"
        "  email: ops@example.org\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.stack == "flask"
    assert config.keep_releases == 3
    assert config.python.app_port == 8100
    assert config.python.workers == 5
    assert config.tls.enabled is True
    assert config.tls_email == "ops@example.org"
    assert [item.path for item in config.shared_items] == [".env", "instance", "db.sqlite3"]


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "deployctl.yml"
    cfg.write_text(
        "domain: shop.example.com\nrepository: repo.git\nstack: react\nkeep_releases: 3\n",
        encoding="utf-8",
    )
    env = {
        "DEPLOYCTL_KEEP_RELEASES": "7",
        "DEPLOYCTL_NGINX__LISTEN_PORT": "8080",
        "DEPLOYCTL_NODE__PACKAGE_MANAGER": "yarn",
        "DEPLOYCTL_SHARED_ITEMS": ".env,public/uploads",
        "DEPLOYCTL_LOCK_TIMEOUT": "45",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.keep_releases == 7
    assert config.nginx.listen_port == 8080
    assert config.node.package_manager == "yarn"
    assert config.lock_timeout == 45.0
    assert [item.path for item in config.shared_items] == [".env", "public/uploads"]


def test_config_file_env_var_selects_file(tmp_path: Path) -> None:
    """``DEPLOYCTL_CONFIG_FILE`` points the loader at an alternate file."""
    cfg = tmp_path / "alt.yml"
    cfg.write_text("domain: alt.example.com\nrepository: r.git\nstack: php\n", encoding="utf-8")

    config = load_config(env={"DEPLOYCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.domain == "alt.example.com"


def test_overrides_win_over_env(tmp_path: Path) -> None:
    """Programmatic overrides (CLI flags) have the highest precedence."""
    env = {**REQUIRED, "DEPLOYCTL_LOCK_TIMEOUT": "10"}

    config = load_config(
        config_file=tmp_path / "missing.yml", env=env, overrides={"lock_timeout": 2.5}
    )

    assert config.lock_timeout == 2.5


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("DEPLOYCTL_STACK", "rails", "Unsupported stack"),
        ("DEPLOYCTL_DOMAIN", "bad domain!", "not a valid host name"),
        ("DEPLOYCTL_KEEP_RELEASES", "0", "keep_releases"),
        ("DEPLOYCTL_NGINX__LISTEN_PORT", "70000", "nginx.listen_port"),
        ("DEPLOYCTL_NODE__PACKAGE_MANAGER", "bun", "package_manager"),
        ("DEPLOYCTL_UNKNOWN", "1", "Unknown configuration keys"),
        ("DEPLOYCTL_DATABASE__NAME", "shop-db", "database.name"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, key: str, value: str, message: str) -> None:
    """Invalid settings are rejected before anything touches the host."""
    env = {**REQUIRED, key: value}

    with pytest.raises(ConfigError) as excinfo:
        load_config(config_file=tmp_path / "missing.yml", env=env)

    assert message in str(excinfo.value)


def test_unknown_section_key_rejected(tmp_path: Path) -> None:
    """Unknown keys inside a section are reported."""
    cfg = tmp_path / "deployctl.yml"
    cfg.write_text(
        "domain: shop.example.com\nrepository: r.git\nstack: php\nphp:\n  flavour: x\n",
        encoding="utf-8",
    )

    with pytest.raises(ConfigError, match="Unknown php configuration keys: flavour"):
        load_config(config_file=cfg, env={})


def test_jsp_defaults_derive_from_project_name(tmp_path: Path) -> None:
    """The WAR name defaults to the project name."""
    env = {**REQUIRED, "DEPLOYCTL_STACK": "jsp", "DEPLOYCTL_PROJECT_NAME": "storefront"}

    config = load_config(config_file=tmp_path / "missing.yml", env=env)

    assert config.jsp.app_name == "storefront"
    assert config.jsp.war_path == "target/storefront.war"
    assert config.shared_items == ()


def test_parse_shared_items_uses_name_heuristic() -> None:
    """Untagged names containing a dot are files, others directories."""
    items = parse_shared_items(".env, storage ,db.sqlite3,public/uploads")

    assert items == (
        SharedItem(".env", "file"),
        SharedItem("storage", "dir"),
        SharedItem("db.sqlite3", "file"),
        SharedItem("public/uploads", "dir"),
    )


def test_parse_shared_items_honours_explicit_types() -> None:
    """Tags, trailing slashes and mappings override the heuristic."""
    items = parse_shared_items(
        [
            "config.d/",
            "VERSION:file",
            {"path": "node.cache", "type": "dir"},
        ]
    )

    assert items == (
        SharedItem("config.d", "dir"),
        SharedItem("VERSION", "file"),
        SharedItem("node.cache", "dir"),
    )


@pytest.mark.parametrize(
    "value",
    ["/etc/passwd", "../outside", "storage,storage", "cache:socket", 42],
)
def test_parse_shared_items_rejects_invalid_entries(value: object) -> None:
    """Absolute, escaping, duplicate and mistyped entries are rejected."""
    with pytest.raises(ConfigError):
        parse_shared_items(value)


def test_parse_shared_items_skips_blank_entries() -> None:
    """Empty segments in a comma list are ignored."""
    assert parse_shared_items(".env,,storage,") == (
        SharedItem(".env", "file"),
        SharedItem("storage", "dir"),
    )


@pytest.mark.parametrize(
    "value",
    ["storage,storage/logs", "public/uploads,public", ["storage:dir", "storage/app/.gitignore"]],
)
def test_parse_shared_items_rejects_nested_items(value: object) -> None:
    """An item inside another shared item cannot be linked separately."""
    with pytest.raises(ConfigError, match="nested inside"):
        parse_shared_items(value)


def test_parse_shared_items_allows_common_prefixes() -> None:
    """Siblings sharing a name prefix are not nested."""
    items = parse_shared_items("storage,storage-cache,public/uploads,public/media")

    assert [item.path for item in items] == [
        "storage",
        "storage-cache",
        "public/uploads",
        "public/media",
    ]


def test_database_defaults_derive_from_project(tmp_path: Path) -> None:
    """Database names come from the project and credentials live in the state dir."""
    env = {**REQUIRED, "DEPLOYCTL_STATE_DIR": str(tmp_path / "state")}

    config = load_config(config_file=tmp_path / "missing.yml", env=env)

    assert config.database.provision is False
    assert config.database.name == "shop_example_com"
    assert config.database.user == "shop_example_com"
    assert config.database.credentials_file == tmp_path / "state" / "shop.example.com.credentials"
    assert config.to_dict()["database"]["password"] is None


def test_database_password_is_masked(tmp_path: Path) -> None:
    """The rendered configuration never echoes the database password."""
    env = {**REQUIRED, "DEPLOYCTL_DATABASE__PASSWORD": "s3cret"}

    config = load_config(config_file=tmp_path / "missing.yml", env=env)

    assert config.database.password == "s3cret"
    assert config.to_dict()["database"]["password"] == "***"
