"""
Platform factory for creating per-target platform handlers.

Hands out one transport and one platform handler per target and keeps them
for the whole run, so every task against a target reuses one connection.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Type

from ..core.models import Target, TransportKind
from .base import BasePlatform, Transport
from .linux import LinuxPlatform
from .transport import LocalTransport, SSHTransport

logger = logging.getLogger(__name__)


class PlatformFactory:
    """
    Factory for target platform handlers and transports.

    Provides a centralized way to get the platform handler for a target,
    caching it until close_all() is called.
    """

    _platforms: Dict[str, Type[BasePlatform]] = {
        "linux": LinuxPlatform,
    }

    def __init__(self, ssh_config: Optional[Dict[str, Any]] = None,
                 platform_name: str = "linux", command_timeout: int = 300):
        """
        Initialize the factory.

        Args:
            ssh_config: ``ssh`` section of the tool configuration
            platform_name: Registered platform handler to create
            command_timeout: Timeout for individual host commands in seconds
        """
        if platform_name not in self._platforms:
            raise ValueError(f"Unsupported platform: {platform_name}")
        self.ssh_config = ssh_config or {}
        self.platform_class = self._platforms[platform_name]
        self.command_timeout = command_timeout
        self._transports: Dict[str, Transport] = {}
        self._handlers: Dict[str, BasePlatform] = {}
        self._lock = threading.Lock()

    def get_transport(self, target: Target) -> Transport:
        """
        Get the transport for a target, creating it on first use.

        Args:
            target: Target to reach

        Returns:
            Transport: Cached transport instance
        """
        with self._lock:
            transport = self._transports.get(target.id)
            if transport is None:
                transport = self._create_transport(target)
                self._transports[target.id] = transport
            return transport

    def get_platform(self, target: Target) -> BasePlatform:
        """
        Get the platform handler for a target, creating it on first use.

        Args:
            target: Target to operate on

        Returns:
            BasePlatform: Cached platform handler
        """
        transport = self.get_transport(target)
        with self._lock:
            handler = self._handlers.get(target.id)
            if handler is None:
                handler = self.platform_class(target, transport, command_timeout=self.command_timeout)
                self._handlers[target.id] = handler
            return handler

    def close_all(self) -> None:
        """Close every transport opened by this factory."""
        with self._lock:
            transports = list(self._transports.values())
            self._transports.clear()
            self._handlers.clear()
        for transport in transports:
            transport.close()

    @classmethod
    def get_supported_platforms(cls) -> List[str]:
        return list(cls._platforms.keys())

    @classmethod
    def register_platform(cls, name: str, platform_class: Type[BasePlatform]) -> None:
        """
        Register a new platform handler.

        Args:
            name: Name to register under
            platform_class: Platform handler class
        """
        cls._platforms[name] = platform_class

    def _create_transport(self, target: Target) -> Transport:
        if target.transport == TransportKind.LOCAL:
            return LocalTransport()
        return SSHTransport(
            target,
            connect_timeout=int(self.ssh_config.get("connect_timeout", 10)),
            strict_host_keys=bool(self.ssh_config.get("strict_host_keys", False))
        )
