"""Domain models for image build runs."""

from __future__ import annotations

from .models import (
    META_DATA_NAME,
    PROVISIONING_FILE_NAMES,
    USER_DATA_NAME,
    ImageSource,
    MountHandle,
    PipelineConfig,
    PipelineResult,
    ProvisioningFiles,
    ReleaseChannel,
    VerificationRecord,
)


__all__ = [
    "META_DATA_NAME",
    "PROVISIONING_FILE_NAMES",
    "USER_DATA_NAME",
    "ImageSource",
    "MountHandle",
    "PipelineConfig",
    "PipelineResult",
    "ProvisioningFiles",
    "ReleaseChannel",
    "VerificationRecord",
]
