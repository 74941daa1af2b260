"""
Services package.

Provides the registry, the build pipeline and the lifecycle orchestration.
"""

from .archive_stager import ArchiveStager, decode_archive
from .image_builder import DockerImageBuilder, ImageBuilder
from .orchestrator import FunctionAppOrchestrator
from .port_allocator import PortAllocator
from .reconciler import StatusReconciler
from .registry_store import RegistryDatabase, RegistryStore

__all__ = [
    "ArchiveStager",
    "DockerImageBuilder",
    "FunctionAppOrchestrator",
    "ImageBuilder",
    "PortAllocator",
    "RegistryDatabase",
    "RegistryStore",
    "StatusReconciler",
    "decode_archive",
]
