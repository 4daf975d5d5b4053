"""
Build-and-push reconciliation for container images in Amazon ECR.

Reconciles a declared image ("built from the Dockerfile at path P, pushed to
ECR repository R under tag T") against the registry and the local Docker
daemon. A declarative infrastructure engine calls the lifecycle operations
and persists the returned identity (the pushed manifest) and the Dockerfile
fingerprint between calls.

Features:
    - Create: build, tag, authenticate, push, record the manifest
    - Read: refresh the manifest, report the image absent on drift
    - Plan: detect Dockerfile changes by SHA-256 fingerprint
    - Update: registry-side retag on tag change, rebuild on content drift
    - Delete: remove the registry tag
    - Tag immutability guard: taken tags in IMMUTABLE repositories are never overwritten
    - Per-call region and deadline, no process-wide state
    - JSON HTTP surface via Flask
    - Configurable via environment variables

Remote references take the form:
    <accountId>.dkr.ecr.<region>.amazonaws.com/<repositoryName>:<imageTag>
"""

__version__ = "0.1.0"

# Import key components for convenience
from .config import Config
from .errors import ReconcileError
from .models import DesiredImageSpec, Mutability, ReconcileContext, ResourceState, UpdatePlan
from .fingerprint import compute_fingerprint, read_build_instructions
from .inspector import RegistryInspector, RepositorySnapshot
from .builder import ImageBuilder
from .mutator import RegistryMutator
from .reconciler import LifecycleReconciler

__all__ = [
    "Config",
    "ReconcileError",
    "DesiredImageSpec",
    "Mutability",
    "ReconcileContext",
    "ResourceState",
    "UpdatePlan",
    "compute_fingerprint",
    "read_build_instructions",
    "RegistryInspector",
    "RepositorySnapshot",
    "ImageBuilder",
    "RegistryMutator",
    "LifecycleReconciler",
]
