"""Load action and scenario definitions from YAML.

Action files (``<actions_dir>/*.yaml``)::

    service: user-service
    url: http://${USER_SERVICE_HOST}:8080
    actions:
      - name: createUser
        type: REST
        method: POST
        endpoint: /users
        data: {name: bob}
        responseValidation: ["res.id != null"]
        variables: {userId: res.id}

Scenario files (one scenario per file, named after the file stem)::

    description: Create a user and wait for the event
    actions:
      - action: createUser
        headers: {Authorization: "Bearer {{ token }}"}
      - action: userCreatedEvent

An entry with ``action:`` specializes the named action with its remaining
keys; an entry with ``type:`` defines a new action inline.

``${NAME}`` placeholders in action files are replaced before parsing, from
the environment config mapping first and ``os.environ`` second. Unknown
names raise :class:`ConfigurationError`.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from .actions import Action, from_definition, from_template
from .errors import ConfigurationError
from .observability.logging import get_logger
from .scenario import Scenario

logger = get_logger(__name__)

_PLACEHOLDER_RE = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')
_YAML_SUFFIXES = ('.yaml', '.yml')


def load_env_config(path: str | Path | None) -> dict[str, Any]:
    """Load the environment config mapping (empty when ``path`` is None)."""
    if path is None:
        return {}
    data = _read_yaml(Path(path))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f'Environment config {path} must be a mapping, got {type(data).__name__}'
        )
    return data


def substitute_placeholders(
    text: str,
    env_config: Mapping[str, Any],
    *,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Replace ``${NAME}`` placeholders in ``text``."""
    environ = os.environ if environ is None else environ

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in env_config:
            return str(env_config[name])
        if name in environ:
            return environ[name]
        raise ConfigurationError(f'Undefined placeholder ${{{name}}}')

    return _PLACEHOLDER_RE.sub(replace, text)


def load_actions(
    actions_dir: str | Path,
    env_config: Mapping[str, Any] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Action]:
    """Load every action file in ``actions_dir`` into a name -> action map."""
    directory = Path(actions_dir)
    if not directory.is_dir():
        raise ConfigurationError(f'Action directory not found: {directory}')

    actions: dict[str, Action] = {}
    for path in _yaml_files(directory):
        text = substitute_placeholders(
            path.read_text(encoding='utf-8'), env_config or {}, environ=environ,
        )
        for action in _parse_action_file(path, _parse_yaml(text, path)):
            if action.name in actions:
                raise ConfigurationError(f'Duplicate action name {action.name!r} in {path}')
            actions[action.name] = action

    logger.debug('actions_loaded', directory=str(directory), count=len(actions))
    return actions


def _parse_action_file(path: Path, data: Any) -> list[Action]:
    if data is None:
        return []
    if not isinstance(data, dict):
        raise ConfigurationError(f'Action file {path} must be a mapping')

    entries = data.get('actions', [])
    if not isinstance(entries, list):
        raise ConfigurationError(f'actions in {path} must be a list')

    defaults = {
        'service': data.get('service', ''),
        'base_url': data.get('url', ''),
    }
    parsed: list[Action] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigurationError(f'Every action in {path} must be a mapping')
        parsed.append(_with_source(path, from_definition, entry, **defaults))
    return parsed


def load_scenario(path: str | Path, actions: Mapping[str, Action]) -> Scenario:
    """Load one scenario file, resolving action references."""
    path = Path(path)
    data = _read_yaml(path)
    if not isinstance(data, dict):
        raise ConfigurationError(f'Scenario file {path} must be a mapping')

    entries = data.get('actions')
    if not isinstance(entries, list) or not entries:
        raise ConfigurationError(f'Scenario {path} needs a non-empty actions list')

    scenario_actions: list[Action] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigurationError(f'Every action entry in {path} must be a mapping')
        scenario_actions.append(_scenario_action(path, entry, actions))

    return Scenario(
        name=path.stem,
        description=str(data.get('description', '')),
        actions=tuple(scenario_actions),
    )


def load_scenarios(path: str | Path, actions: Mapping[str, Action]) -> list[Scenario]:
    """Load a single scenario file, or every scenario file in a directory."""
    path = Path(path)
    if path.is_file():
        return [load_scenario(path, actions)]
    if path.is_dir():
        scenarios: list[Scenario] = []
        sources: dict[str, Path] = {}
        for file in _yaml_files(path):
            scenario = load_scenario(file, actions)
            if scenario.name in sources:
                raise ConfigurationError(
                    f'Duplicate scenario name {scenario.name!r}: '
                    f'{sources[scenario.name]} and {file}'
                )
            sources[scenario.name] = file
            scenarios.append(scenario)
        return scenarios
    raise ConfigurationError(f'Scenario path not found: {path}')


def _scenario_action(
    path: Path,
    entry: Mapping[str, Any],
    actions: Mapping[str, Action],
) -> Action:
    reference = entry.get('action')
    if reference is None:
        return _with_source(path, from_definition, entry)

    template = actions.get(reference)
    if template is None:
        raise ConfigurationError(f'{path}: unknown action {reference!r}')
    override = {key: value for key, value in entry.items() if key != 'action'}
    return _with_source(path, from_template, override, template)


def _with_source(path: Path, build: Callable[..., Action], *args: Any, **kwargs: Any) -> Action:
    """Call ``build`` and prefix configuration errors with the file path."""
    try:
        return build(*args, **kwargs)
    except ConfigurationError as exc:
        raise ConfigurationError(f'{path}: {exc}') from exc
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f'{path}: invalid action definition: {exc}') from exc


def _yaml_files(directory: Path) -> list[Path]:
    return sorted(p for p in directory.iterdir() if p.suffix in _YAML_SUFFIXES and p.is_file())


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise ConfigurationError(f'File not found: {path}')
    return _parse_yaml(path.read_text(encoding='utf-8'), path)


def _parse_yaml(text: str, path: Path) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f'Invalid YAML in {path}: {exc}') from exc


__all__ = [
    'load_actions',
    'load_env_config',
    'load_scenario',
    'load_scenarios',
    'substitute_placeholders',
]
