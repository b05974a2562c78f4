"""Configuration models for vmfs-upgrade using Pydantic v2."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class VCenterConfig(BaseModel):
    """vCenter connection configuration."""

    server: str = Field(..., description="vCenter hostname or IP")
    username: str = Field(..., description="vCenter username")
    password: Optional[SecretStr] = Field(None, description="vCenter password (prefer password_env)")
    password_env: Optional[str] = Field(None, description="Environment variable containing the password")
    insecure: bool = Field(False, description="Skip SSL certificate verification")
    port: int = Field(443, description="vCenter port")

    @model_validator(mode="after")
    def resolve_password(self) -> "VCenterConfig":
        if self.password is None and self.password_env:
            env_val = os.environ.get(self.password_env)
            if env_val:
                self.password = SecretStr(env_val)
        if self.password is None:
            raise ValueError("Either 'password' or 'password_env' (with matching env var) must be provided")
        return self

    def secret(self) -> str:
        return self.password.get_secret_value() if self.password else ""


class UpgradeSettings(BaseModel):
    """Workflow behavior settings."""

    work_dir: Path = Field(Path("/var/lib/vmfs-upgrade"), description="Root for per-workflow state directories")
    batch_size: int = Field(2, ge=1, le=32, description="Max concurrent Storage vMotion tasks per batch")
    poll_interval_seconds: int = Field(15, ge=1, description="Relocation task poll interval")
    space_buffer_gb: int = Field(5, ge=0, description="Free space kept on the destination above each batch footprint")
    relocation_deadline_seconds: Optional[int] = Field(
        None, ge=1, description="Give up waiting on a relocation task after this long (unset = wait forever)"
    )
    source_vmfs_version: int = Field(5, description="VMFS major version being upgraded from")
    target_vmfs_version: int = Field(6, description="VMFS major version to recreate the datastore with")
    min_host_version: str = Field("6.5.0", pattern=r"^\d+(\.\d+)*$", description="Minimum ESXi/vCenter version")

    @field_validator("work_dir")
    @classmethod
    def ensure_work_dir(cls, v: Path) -> Path:
        v.mkdir(parents=True, exist_ok=True)
        return v

    @model_validator(mode="after")
    def check_versions(self) -> "UpgradeSettings":
        if self.target_vmfs_version <= self.source_vmfs_version:
            raise ValueError("target_vmfs_version must be greater than source_vmfs_version")
        return self


class AppConfig(BaseModel):
    """Root application configuration."""

    vcenter: VCenterConfig
    upgrade: UpgradeSettings = Field(default_factory=UpgradeSettings)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AppConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls(**data)

    @classmethod
    def from_env_and_args(cls, **overrides) -> "AppConfig":
        """Build config from environment variables with CLI overrides."""
        base = {
            "vcenter": {
                "server": os.environ.get("VCENTER_HOST", ""),
                "username": os.environ.get("VCENTER_USERNAME", ""),
                "password_env": "VCENTER_PASSWORD",
                "insecure": os.environ.get("VCENTER_INSECURE", "false").lower() == "true",
            },
            "upgrade": {},
        }
        if os.environ.get("VMFS_UPGRADE_WORK_DIR"):
            base["upgrade"]["work_dir"] = os.environ["VMFS_UPGRADE_WORK_DIR"]
        # Deep merge overrides
        for key, value in overrides.items():
            if isinstance(value, dict) and key in base:
                base[key].update(value)
            else:
                base[key] = value
        return cls(**base)
