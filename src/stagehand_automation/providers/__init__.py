from __future__ import annotations

from .base import Provider
from .container import ContainerProvider, DockerCli
from .dns import DNSProvider
from .package import PackageManagerFactory, PackageProvider
from .pool import PoolProvider, ZpoolCli
from .service import ServiceProvider, SystemCtl
from .snap import SnapCli, SnapProvider

__all__ = [
    "ContainerProvider",
    "DNSProvider",
    "DockerCli",
    "PackageManagerFactory",
    "PackageProvider",
    "PoolProvider",
    "Provider",
    "ServiceProvider",
    "SnapCli",
    "SnapProvider",
    "SystemCtl",
    "ZpoolCli",
]
