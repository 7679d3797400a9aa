from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from rivet.errors import ConfigError

DEFAULT_COMPOSE_FILE = "docker-compose.yml"
DEFAULT_CHECK_INTERVAL_SECONDS = 5 * 60

_REQUIRED_FIELDS = ("base_path", "git_url", "clone_dir_name", "branch", "service_name")
_KNOWN_FIELDS = frozenset(_REQUIRED_FIELDS + ("compose_file", "check_interval_seconds"))

# camelCase spellings accepted alongside the snake_case field names.
_KEY_ALIASES = {
    "basePath": "base_path",
    "gitUrl": "git_url",
    "cloneDirName": "clone_dir_name",
    "serviceName": "service_name",
    "composeFile": "compose_file",
    "checkIntervalSeconds": "check_interval_seconds",
}


@dataclass(frozen=True, slots=True)
class RepositoryConfig:
    base_path: str
    clone_dir_name: str
    git_url: str
    branch: str
    service_name: str
    compose_file: str = DEFAULT_COMPOSE_FILE
    check_interval_seconds: int = DEFAULT_CHECK_INTERVAL_SECONDS

    @property
    def repo_id(self) -> str:
        return f"{self.clone_dir_name}@{self.branch}"

    @property
    def clone_path(self) -> Path:
        return Path(self.base_path).expanduser().absolute() / self.clone_dir_name


@dataclass(frozen=True, slots=True)
class RepoInventory:
    repositories: tuple[RepositoryConfig, ...]

    def __len__(self) -> int:
        return len(self.repositories)


def _toml_load(path: Path) -> Any:
    try:
        import tomllib  # pyright: ignore[reportMissingImports]
    except ModuleNotFoundError:  # pragma: no cover
        import tomli as tomllib  # type: ignore[no-redef]

    with path.open("rb") as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Failed to parse TOML in {path}: {e}") from e


def _yaml_load(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f)
        except (yaml.YAMLError, UnicodeDecodeError) as e:
            raise ConfigError(f"Failed to parse YAML in {path}: {e}") from e


def _load_document(path: Path) -> dict[str, Any]:
    try:
        if path.suffix.lower() == ".toml":
            data = _toml_load(path)
        else:
            data = _yaml_load(path)
    except FileNotFoundError as e:
        raise ConfigError(
            f"Config file not found: {path} (create it or pass a path with -config)"
        ) from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top level of {path}, got {type(data).__name__}")
    return data


def _as_str(
    value: Any,
    *,
    field: str,
    errors: list[str],
    required: bool = False,
) -> str | None:
    if value is None:
        if required:
            errors.append(f"{field}: required field missing")
        return None
    if not isinstance(value, str):
        errors.append(f"{field}: expected string, got {type(value).__name__}")
        return None
    if not value.strip():
        errors.append(f"{field}: must be non-empty")
        return None
    return value.strip()


def _as_int(value: Any, *, field: str, errors: list[str]) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{field}: expected integer, got {type(value).__name__}")
        return None
    return value


def _normalize_keys(entry: dict[str, Any], *, prefix: str, errors: list[str]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key, value in entry.items():
        name = _KEY_ALIASES.get(key, key)
        if name in normalized:
            errors.append(f"{prefix}.{name}: given under more than one spelling")
            continue
        normalized[name] = value
    return normalized


def _parse_repository(
    index: int,
    entry: Any,
    *,
    errors: list[str],
) -> RepositoryConfig | None:
    prefix = f"repositories[{index}]"
    if not isinstance(entry, dict):
        errors.append(f"{prefix}: expected mapping, got {type(entry).__name__}")
        return None

    entry = _normalize_keys(entry, prefix=prefix, errors=errors)
    unknown = set(entry) - _KNOWN_FIELDS
    if unknown:
        errors.append(f"{prefix}: unknown keys {sorted(unknown)} (allowed: {sorted(_KNOWN_FIELDS)})")

    required = {
        name: _as_str(entry.get(name), field=f"{prefix}.{name}", errors=errors, required=True)
        for name in _REQUIRED_FIELDS
    }
    compose_file = _as_str(entry.get("compose_file"), field=f"{prefix}.compose_file", errors=errors)
    interval = _as_int(
        entry.get("check_interval_seconds"),
        field=f"{prefix}.check_interval_seconds",
        errors=errors,
    )

    if any(v is None for v in required.values()):
        return None

    return RepositoryConfig(
        base_path=str(required["base_path"]),
        clone_dir_name=str(required["clone_dir_name"]),
        git_url=str(required["git_url"]),
        branch=str(required["branch"]),
        service_name=str(required["service_name"]),
        compose_file=compose_file or DEFAULT_COMPOSE_FILE,
        check_interval_seconds=(
            interval if interval is not None and interval > 0 else DEFAULT_CHECK_INTERVAL_SECONDS
        ),
    )


def _validate_unique_clone_paths(
    repositories: list[RepositoryConfig],
    *,
    errors: list[str],
) -> None:
    seen: dict[Path, int] = {}
    for idx, repo in enumerate(repositories):
        first = seen.setdefault(repo.clone_path, idx)
        if first != idx:
            errors.append(
                f"repositories[{idx}]: clone path {repo.clone_path.as_posix()!r} "
                f"is already used by repositories[{first}]"
            )


def load_repo_inventory(config_path: Path) -> RepoInventory:
    path = Path(config_path).expanduser().absolute()
    data = _load_document(path)

    errors: list[str] = []
    unknown_top_level = set(data) - {"repositories"}
    if unknown_top_level:
        errors.append(f"Top-level: unknown keys {sorted(unknown_top_level)} (allowed: ['repositories'])")

    entries = data.get("repositories")
    if entries is None:
        entries = []
    if not isinstance(entries, list):
        errors.append(f"repositories: expected list, got {type(entries).__name__}")
        raise ConfigError(f"Invalid config {path}:\n- " + "\n- ".join(errors))

    repositories: list[RepositoryConfig] = []
    for idx, entry in enumerate(entries):
        repo = _parse_repository(idx, entry, errors=errors)
        if repo is not None:
            repositories.append(repo)

    _validate_unique_clone_paths(repositories, errors=errors)

    if errors:
        raise ConfigError(f"Invalid config {path}:\n- " + "\n- ".join(errors))

    return RepoInventory(repositories=tuple(repositories))
