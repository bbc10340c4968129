"""
Instance Capabilities - Static capability table for AWS instance types.

The table is built once at import time and exposed read-only, so any number
of concurrent reconciles may consult it without locking.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping


@dataclass(frozen=True)
class CapabilityDescriptor:
    """Compute capabilities of a single instance type."""

    vcpu: int = 0
    memory_mib: int = 0
    gpu_count: int = 0


ZERO_CAPABILITIES = CapabilityDescriptor()


def _build_table() -> Mapping[str, CapabilityDescriptor]:
    # (vCPU, memory MiB, GPUs)
    raw: Dict[str, tuple] = {
        # General purpose, burstable
        "t2.nano": (1, 512, 0),
        "t2.micro": (1, 1024, 0),
        "t2.small": (1, 2048, 0),
        "t2.medium": (2, 4096, 0),
        "t2.large": (2, 8192, 0),
        "t2.xlarge": (4, 16384, 0),
        "t2.2xlarge": (8, 32768, 0),
        "t3.nano": (2, 512, 0),
        "t3.micro": (2, 1024, 0),
        "t3.small": (2, 2048, 0),
        "t3.medium": (2, 4096, 0),
        "t3.large": (2, 8192, 0),
        "t3.xlarge": (4, 16384, 0),
        "t3.2xlarge": (8, 32768, 0),
        # General purpose
        "m4.large": (2, 8192, 0),
        "m4.xlarge": (4, 16384, 0),
        "m4.2xlarge": (8, 32768, 0),
        "m4.4xlarge": (16, 65536, 0),
        "m4.10xlarge": (40, 163840, 0),
        "m4.16xlarge": (64, 262144, 0),
        "m5.large": (2, 8192, 0),
        "m5.xlarge": (4, 16384, 0),
        "m5.2xlarge": (8, 32768, 0),
        "m5.4xlarge": (16, 65536, 0),
        "m5.8xlarge": (32, 131072, 0),
        "m5.12xlarge": (48, 196608, 0),
        "m5.16xlarge": (64, 262144, 0),
        "m5.24xlarge": (96, 393216, 0),
        # Compute optimized
        "c4.large": (2, 3840, 0),
        "c4.xlarge": (4, 7680, 0),
        "c4.2xlarge": (8, 15360, 0),
        "c4.4xlarge": (16, 30720, 0),
        "c4.8xlarge": (36, 61440, 0),
        "c5.large": (2, 4096, 0),
        "c5.xlarge": (4, 8192, 0),
        "c5.2xlarge": (8, 16384, 0),
        "c5.4xlarge": (16, 32768, 0),
        "c5.9xlarge": (36, 73728, 0),
        "c5.18xlarge": (72, 147456, 0),
        # Memory optimized
        "r4.large": (2, 15616, 0),
        "r4.xlarge": (4, 31232, 0),
        "r4.2xlarge": (8, 62464, 0),
        "r4.4xlarge": (16, 124928, 0),
        "r4.8xlarge": (32, 249856, 0),
        "r4.16xlarge": (64, 499712, 0),
        "r5.large": (2, 16384, 0),
        "r5.xlarge": (4, 32768, 0),
        "r5.2xlarge": (8, 65536, 0),
        "r5.4xlarge": (16, 131072, 0),
        "r5.12xlarge": (48, 393216, 0),
        "r5.24xlarge": (96, 786432, 0),
        # Storage optimized
        "i3.large": (2, 15616, 0),
        "i3.xlarge": (4, 31232, 0),
        "i3.2xlarge": (8, 62464, 0),
        "i3.4xlarge": (16, 124928, 0),
        # Accelerated computing
        "p2.xlarge": (4, 62464, 1),
        "p2.8xlarge": (32, 499712, 8),
        "p2.16xlarge": (64, 786432, 16),
        "p3.2xlarge": (8, 62464, 1),
        "p3.8xlarge": (32, 249856, 4),
        "p3.16xlarge": (64, 499712, 8),
        "g3.4xlarge": (16, 124928, 1),
        "g3.8xlarge": (32, 249856, 2),
        "g3.16xlarge": (64, 499712, 4),
        "g4dn.xlarge": (4, 16384, 1),
        "g4dn.2xlarge": (8, 32768, 1),
        "g4dn.4xlarge": (16, 65536, 1),
        "g4dn.8xlarge": (32, 131072, 1),
        "g4dn.12xlarge": (48, 196608, 4),
        "g4dn.16xlarge": (64, 262144, 1),
    }
    return MappingProxyType(
        {
            name: CapabilityDescriptor(vcpu=v, memory_mib=m, gpu_count=g)
            for name, (v, m, g) in raw.items()
        }
    )


INSTANCE_TYPES: Mapping[str, CapabilityDescriptor] = _build_table()


def lookup(instance_type: str) -> CapabilityDescriptor:
    """
    Look up the capabilities of an instance type.

    Unknown instance types yield a zero-valued descriptor rather than an
    error; capability annotations are best-effort metadata.

    Args:
        instance_type: Instance type identifier (e.g. 'm4.xlarge')

    Returns:
        The CapabilityDescriptor for the instance type
    """
    return INSTANCE_TYPES.get(instance_type, ZERO_CAPABILITIES)
