"""
Target registry.

Holds connection and identity information for every managed host, in
registration order so that dispatch order and log output are reproducible.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from .errors import DuplicateTargetError, RegistryFrozenError, UnknownTargetError
from .models import Target

logger = logging.getLogger(__name__)


class TargetRegistry:
    """
    Ordered collection of managed targets.

    Targets are immutable once registered and leave the registry only through
    an explicit deregister() call. While a run is in progress the registry is
    frozen and rejects modification.
    """

    def __init__(self, targets: Optional[List[Target]] = None):
        # dicts keep insertion order, which is the registration order
        self._targets: Dict[str, Target] = {}
        self._lock = threading.Lock()
        self._frozen = False
        for target in targets or []:
            self.register(target)

    def register(self, target: Target) -> None:
        """
        Register a new target.

        Args:
            target: Target to register

        Raises:
            DuplicateTargetError: If a target with the same id is registered
            RegistryFrozenError: If a run is in progress
        """
        with self._lock:
            self._ensure_mutable()
            if target.id in self._targets:
                raise DuplicateTargetError(target.id)
            self._targets[target.id] = target
        logger.debug("Registered target %s (%s)", target.id, target.address)

    def deregister(self, target_id: str) -> Target:
        """
        Remove a target from the registry.

        Args:
            target_id: Id of the target to remove

        Returns:
            Target: The removed target

        Raises:
            UnknownTargetError: If no such target is registered
            RegistryFrozenError: If a run is in progress
        """
        with self._lock:
            self._ensure_mutable()
            try:
                target = self._targets.pop(target_id)
            except KeyError:
                raise UnknownTargetError(target_id) from None
        logger.debug("Deregistered target %s", target_id)
        return target

    def list(self, tag: Optional[str] = None) -> List[Target]:
        """
        List registered targets in registration order.

        Args:
            tag: Only return targets carrying this tag

        Returns:
            List[Target]: Matching targets
        """
        with self._lock:
            targets = list(self._targets.values())
        if tag is not None:
            targets = [t for t in targets if t.has_tag(tag)]
        return targets

    def get(self, target_id: str) -> Target:
        with self._lock:
            try:
                return self._targets[target_id]
            except KeyError:
                raise UnknownTargetError(target_id) from None

    def select(self, selector: str) -> List[Target]:
        """
        Resolve a CLI-style target selector.

        The selector is a comma-separated list of tokens. Each token matches a
        target id, or otherwise a tag; ``tag:<name>`` forces a tag match.
        Results keep registration order and contain each target once.

        Args:
            selector: Selector string such as ``web,tag:staging``

        Returns:
            List[Target]: Selected targets

        Raises:
            UnknownTargetError: If a token matches neither an id nor a tag
        """
        wanted = set()
        for token in (t.strip() for t in selector.split(',')):
            if not token:
                continue
            if token.startswith('tag:'):
                matched = {t.id for t in self.list(tag=token[4:])}
            elif token in self:
                matched = {token}
            else:
                matched = {t.id for t in self.list(tag=token)}
            if not matched:
                raise UnknownTargetError(token)
            wanted |= matched
        return [t for t in self.list() if t.id in wanted]

    @contextmanager
    def frozen(self) -> Iterator["TargetRegistry"]:
        """Hold the registry read-only for the duration of a run."""
        with self._lock:
            self._frozen = True
        try:
            yield self
        finally:
            with self._lock:
                self._frozen = False

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def __contains__(self, target_id: object) -> bool:
        return target_id in self._targets

    def __len__(self) -> int:
        return len(self._targets)

    def __iter__(self) -> Iterator[Target]:
        return iter(self.list())

    def _ensure_mutable(self) -> None:
        if self._frozen:
            raise RegistryFrozenError("Target registry is read-only while a run is in progress")
