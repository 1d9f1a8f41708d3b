from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ProcessorInfo(BaseModel):
    model: Optional[str] = None
    architecture: Optional[str] = None
    cores: Optional[int] = None


class GraphicsInfo(BaseModel):
    vendor: Optional[str] = None
    renderer: Optional[str] = None
    memory: Optional[int] = None


class OsInfo(BaseModel):
    platform: Optional[str] = None
    architecture: Optional[str] = None
    version: Optional[str] = None


class DeviceCharacteristics(BaseModel):
    """Raw hardware/browser characteristics; consumed by the hash chain only."""
    cpu: ProcessorInfo = Field(default_factory=ProcessorInfo)
    gpu: GraphicsInfo = Field(default_factory=GraphicsInfo)
    os: OsInfo = Field(default_factory=OsInfo)
    webgl: Optional[str] = None


class FingerprintRequest(BaseModel):
    characteristics: DeviceCharacteristics
    device_identity: Optional[str] = None
    client_address: Optional[str] = None
    wallet_address: Optional[str] = None


class HeartbeatRequest(BaseModel):
    sequence: int
    subject_id: str


class EntitlementCheckRequest(BaseModel):
    evidence_key: Optional[str] = None
    force_refresh: bool = False


class WalletRequest(BaseModel):
    wallet_address: str


class AdminRefreshRequest(BaseModel):
    device_identity: str
    evidence_keys: List[str] = Field(default_factory=list)


class ScriptDefinition(BaseModel):
    script_id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    category: str = "automation"
    required_evidence_keys: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
