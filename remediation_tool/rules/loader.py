"""
Loaders for plan and inventory definitions.

Plans and inventories are YAML documents. Plans describe stages and their
task units; inventories describe the targets a plan can run against.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from pydantic import ValidationError

from ..core.errors import ConfigError, PlanValidationError
from ..core.models import PlanSpec, StageSpec, Target, TaskSpec

logger = logging.getLogger(__name__)


def _read_yaml(path: Union[str, Path], error_class) -> Any:
    path = Path(path).expanduser()
    if not path.is_file():
        raise error_class(f"File not found: {path}")
    try:
        with open(path, 'r') as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise error_class(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise error_class(f"Cannot read {path}: {e}") from e


def _first_error(error: ValidationError) -> str:
    err = error.errors()[0]
    location = ".".join(str(part) for part in err['loc'])
    return f"{location}: {err['msg']}" if location else err['msg']


class PlanLoader:
    """
    Loads plan definitions from YAML.

    Expected layout::

        name: web-hardening
        description: ...
        evidence: {before: baseline-scan, after: verify-scan}
        stages:
          - name: Provision
            policy: abort-pipeline
            tasks:
              - {id: install-nginx, kind: package, params: {name: nginx}}
    """

    def load(self, path: Union[str, Path]) -> PlanSpec:
        """
        Load a plan file.

        Args:
            path: Path to the plan YAML file

        Returns:
            PlanSpec: Parsed plan document

        Raises:
            PlanValidationError: If the file is missing, malformed or incomplete
        """
        data = _read_yaml(path, PlanValidationError)
        if not isinstance(data, dict):
            raise PlanValidationError(f"Plan {path} must be a mapping")
        spec = self.parse(data)
        logger.debug("Loaded plan %s from %s (%d stages)", spec.name, path, len(spec.stages))
        return spec

    def parse(self, data: Dict[str, Any]) -> PlanSpec:
        """Parse a plan dictionary into a PlanSpec."""
        evidence = data.get('evidence') or {}
        if not isinstance(evidence, dict):
            raise PlanValidationError("'evidence' must be a mapping with 'before' and 'after'")

        stages = data.get('stages') or []
        if not isinstance(stages, list):
            raise PlanValidationError("'stages' must be a list")

        try:
            return PlanSpec(
                name=data.get('name', ''),
                description=data.get('description'),
                stages=[self._parse_stage(stage) for stage in stages],
                evidence_before=evidence.get('before'),
                evidence_after=evidence.get('after')
            )
        except ValidationError as e:
            raise PlanValidationError(f"Invalid plan: {_first_error(e)}") from e

    def _parse_stage(self, stage_data: Any) -> StageSpec:
        if not isinstance(stage_data, dict):
            raise PlanValidationError(f"Stage definition must be a mapping: {stage_data!r}")
        tasks = stage_data.get('tasks') or []
        if not isinstance(tasks, list):
            raise PlanValidationError(f"Stage {stage_data.get('name')}: 'tasks' must be a list")

        parsed = []
        for task_data in tasks:
            if not isinstance(task_data, dict):
                raise PlanValidationError(f"Task definition must be a mapping: {task_data!r}")
            try:
                parsed.append(TaskSpec(
                    id=task_data.get('id', ''),
                    kind=task_data.get('kind'),
                    params=task_data.get('params') or {}
                ))
            except ValidationError as e:
                raise PlanValidationError(
                    f"Task {task_data.get('id', '<unnamed>')}: {_first_error(e)}"
                ) from e

        values = {'name': stage_data.get('name', ''), 'tasks': parsed}
        if stage_data.get('policy') is not None:
            values['policy'] = stage_data['policy']
        try:
            return StageSpec(**values)
        except ValidationError as e:
            raise PlanValidationError(f"Stage {stage_data.get('name')}: {_first_error(e)}") from e


class InventoryLoader:
    """
    Loads target inventories from YAML.

    Expected layout::

        targets:
          - id: web-01
            address: 10.0.0.11
            tags: [web, prod]
            credentials: {username: admin, private_key_path: ~/.ssh/id_ed25519}
    """

    def load(self, path: Union[str, Path]) -> List[Target]:
        """
        Load an inventory file.

        Args:
            path: Path to the inventory YAML file

        Returns:
            List[Target]: Targets in file order

        Raises:
            ConfigError: If the file is missing, malformed or a target is invalid
        """
        data = _read_yaml(path, ConfigError)
        if isinstance(data, dict):
            data = data.get('targets')
        if not isinstance(data, list):
            raise ConfigError(f"Inventory {path} must contain a 'targets' list")

        targets = []
        for entry in data:
            if not isinstance(entry, dict):
                raise ConfigError(f"Target definition must be a mapping: {entry!r}")
            entry = dict(entry)
            if isinstance(entry.get('tags'), str):
                entry['tags'] = [entry['tags']]
            try:
                targets.append(Target.model_validate(entry))
            except ValidationError as e:
                raise ConfigError(f"Target {entry.get('id', '<unnamed>')}: {_first_error(e)}") from e

        logger.debug("Loaded %d target(s) from %s", len(targets), path)
        return targets
