"""
AutoReach - Pydantic Data Schemas

Core data models shared by the browser pool, the page classifier, the defense
detector/responder, the consent and origin policy layers, the connection
monitor and the orchestrator.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Browser pool
# ---------------------------------------------------------------------------

class InstanceStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    CLOSED = "closed"


class TabStatus(str, Enum):
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class LaunchOptions(BaseModel):
    """Launch metadata for one headless browser process."""
    headless: bool = True
    viewport_width: int = Field(1366, ge=200)
    viewport_height: int = Field(768, ge=200)
    user_agent: Optional[str] = None
    args: List[str] = Field(default_factory=list)


class TabInfo(BaseModel):
    id: str
    url: str = "about:blank"
    title: str = ""
    status: TabStatus = TabStatus.LOADING
    created_at: datetime
    last_activity: datetime


class InstanceInfo(BaseModel):
    """Snapshot of a pooled browser instance."""
    id: str
    created_at: datetime
    last_activity: datetime
    status: InstanceStatus = InstanceStatus.ACTIVE
    tabs: Dict[str, TabInfo] = Field(default_factory=dict)
    options: LaunchOptions = Field(default_factory=LaunchOptions)
    active_leases: int = 0


class PoolStats(BaseModel):
    total_instances: int
    active_instances: int
    idle_instances: int
    total_tabs: int
    max_instances: int
    max_tabs_per_instance: int
    oldest_instance: Optional[datetime] = None
    newest_instance: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Page classification
# ---------------------------------------------------------------------------

class DetectionMethod(str, Enum):
    PATTERN_PROBE = "pattern_probe"
    CONTENT_SCAN = "content_scan"
    LINK_TRAVERSAL = "link_traversal"
    FOOTER_SCAN = "footer_scan"


class PageType(str, Enum):
    CONTACT = "contact"
    ABOUT = "about"
    SUPPORT = "support"
    INQUIRY = "inquiry"
    OTHER = "other"


class DetectionCandidate(BaseModel):
    """A URL believed to be a contact page, with the evidence behind it."""
    url: str = Field(..., description="Absolute URL of the candidate page")
    title: str = Field("", description="Page or anchor title")
    confidence: int = Field(..., ge=0, le=100, description="Relative ranking score")
    method: DetectionMethod
    has_form: bool = False
    has_contact_info: bool = False
    page_type: PageType = PageType.CONTACT
    reasoning: str = ""
    content_summary: Optional[str] = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must be an absolute HTTP/HTTPS URL")
        return v


class ClassificationResult(BaseModel):
    base_url: str
    candidates: List[DetectionCandidate] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict, description="strategy -> error message")
    duration_ms: int = 0

    @property
    def found(self) -> bool:
        return bool(self.candidates)

    @property
    def best(self) -> Optional[DetectionCandidate]:
        return self.candidates[0] if self.candidates else None


# ---------------------------------------------------------------------------
# Defenses
# ---------------------------------------------------------------------------

class ChallengeType(str, Enum):
    RECAPTCHA = "recaptcha"
    HCAPTCHA = "hcaptcha"
    EDGE_CHALLENGE = "edge_challenge"
    GENERIC = "generic"
    NONE = "none"


class ChallengeStatus(str, Enum):
    DETECTED = "detected"
    SOLVED = "solved"
    TIMED_OUT = "timed_out"
    BYPASSED = "bypassed"


class DefenseChallenge(BaseModel):
    type: ChallengeType = ChallengeType.NONE
    selectors: List[str] = Field(default_factory=list)
    iframe_urls: List[str] = Field(default_factory=list)
    confidence: int = Field(0, ge=0, le=100)
    status: ChallengeStatus = ChallengeStatus.DETECTED
    breakdown: Dict[str, int] = Field(default_factory=dict, description="type -> confidence")

    @property
    def present(self) -> bool:
        return self.type != ChallengeType.NONE


class ProtectionType(str, Enum):
    EDGE_CHALLENGE = "edge_challenge"
    AKAMAI = "akamai"
    IMPERVA = "imperva"
    CAPTCHA = "captcha"
    RATE_LIMIT = "rate_limit"
    BOT_DETECTION = "bot_detection"


class ProtectionReport(BaseModel):
    types: List[ProtectionType] = Field(default_factory=list)
    confidence: int = Field(0, ge=0, le=100)

    @property
    def detected(self) -> bool:
        return bool(self.types)


class OutcomeTag(str, Enum):
    SOLVED = "solved"
    TIMED_OUT = "timed_out"
    UNAVAILABLE = "unavailable"
    NOT_PRESENT = "not_present"


class ResponseMethod(str, Enum):
    AUTOMATED = "automated"
    RECOGNITION = "recognition"
    MANUAL = "manual"
    NONE = "none"


class DefenseOutcome(BaseModel):
    """Result of the responder; `proceeding` is always True (fail-open)."""
    tag: OutcomeTag
    method: ResponseMethod = ResponseMethod.NONE
    proceeding: bool = True
    challenge: DefenseChallenge = Field(default_factory=DefenseChallenge)
    message: str = ""
    elapsed_s: float = 0.0


# ---------------------------------------------------------------------------
# Consent
# ---------------------------------------------------------------------------

class ConsentStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"
    EXPIRED = "expired"


class ConsentRequest(BaseModel):
    id: str
    user_id: str
    origin: str
    action: str
    requested_at: datetime
    expires_at: datetime
    status: ConsentStatus = ConsentStatus.PENDING
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConsentGrant(BaseModel):
    id: str
    request_id: str
    user_id: str
    origin: str
    action: str
    permissions: List[str]
    granted_at: datetime
    expires_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConsentValidation(BaseModel):
    valid: bool
    reason: Optional[str] = None
    grant: Optional[ConsentGrant] = None


# ---------------------------------------------------------------------------
# Origin policy
# ---------------------------------------------------------------------------

class OriginCheck(BaseModel):
    valid: bool
    reason: Optional[str] = None
    normalized_origin: Optional[str] = None


class OriginViolation(BaseModel):
    origin: str
    reason: str
    timestamp: datetime
    user_agent: Optional[str] = None


# ---------------------------------------------------------------------------
# Connection monitoring
# ---------------------------------------------------------------------------

class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    TIMEOUT = "timeout"


class ConnectionQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class ConnectionRecord(BaseModel):
    id: str
    user_id: str
    origin: str
    connected_at: datetime
    last_activity: datetime
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    quality: ConnectionQuality = ConnectionQuality.GOOD
    latency_ms: float = 0.0
    packet_loss_pct: float = 0.0
    bandwidth_bps: float = 0.0
    error_count: int = 0
    retry_count: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AlertType(str, Enum):
    CONNECTION_LOST = "connection_lost"
    HIGH_LATENCY = "high_latency"
    PACKET_LOSS = "packet_loss"
    ERROR_SPIKE = "error_spike"
    TIMEOUT = "timeout"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Alert(BaseModel):
    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    connection_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    occurrences: int = 1
    resolved: bool = False
    resolved_at: Optional[datetime] = None


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthCheck(BaseModel):
    id: str
    timestamp: datetime
    status: HealthStatus
    response_time_ms: float
    metrics: Dict[str, float] = Field(default_factory=dict)
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Extraction and forms
# ---------------------------------------------------------------------------

class LinkInfo(BaseModel):
    text: str
    url: str
    is_contact: bool = False


class FormField(BaseModel):
    name: str
    type: str = "text"
    required: bool = False
    label: Optional[str] = None
    placeholder: Optional[str] = None
    selector: str = ""


class FormInfo(BaseModel):
    selector: str
    action: Optional[str] = None
    method: str = "get"
    fields: List[FormField] = Field(default_factory=list)
    submit_selector: Optional[str] = None
    is_contact_form: bool = False
    confidence: float = Field(0.0, ge=0.0, le=1.0)


class FormAnalysis(BaseModel):
    forms: List[FormInfo] = Field(default_factory=list)
    contact_forms: List[FormInfo] = Field(default_factory=list)

    @property
    def best(self) -> Optional[FormInfo]:
        if not self.contact_forms:
            return None
        return max(self.contact_forms, key=lambda f: f.confidence)


class TableInfo(BaseModel):
    selector: str
    rows: int
    columns: int
    data: List[List[str]] = Field(default_factory=list)


class PageMetadata(BaseModel):
    title: str = ""
    description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)


class ExtractedContent(BaseModel):
    source_url: str
    emails: List[str] = Field(default_factory=list)
    phones: List[str] = Field(default_factory=list)
    contact_links: List[str] = Field(default_factory=list)
    links: List[LinkInfo] = Field(default_factory=list)
    forms: List[FormInfo] = Field(default_factory=list)
    tables: List[TableInfo] = Field(default_factory=list)
    metadata: PageMetadata = Field(default_factory=PageMetadata)
    text: str = ""


class SubmissionResult(BaseModel):
    attempted: bool = False
    success: bool = False
    skipped_reason: Optional[str] = None
    message: str = ""


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class AutomationStatus(str, Enum):
    COMPLETED = "completed"
    NO_CONTACT_PAGE = "no_contact_page"
    FAILED = "failed"


class AutomationRequest(BaseModel):
    url: str = Field(..., description="Target site landing URL")
    user_id: str
    origin: str = Field(..., description="Origin of the client issuing the request")
    grant_id: str = Field(..., description="Consent grant authorizing this run")
    subject_name: str = ""
    auto_submit: bool = False
    contact_data: Dict[str, str] = Field(default_factory=dict)
    connection_id: Optional[str] = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must be a valid HTTP/HTTPS URL")
        return v


class AutomationResult(BaseModel):
    request_url: str
    status: AutomationStatus
    contact_page_url: Optional[str] = None
    candidates: List[DetectionCandidate] = Field(default_factory=list)
    extracted: Optional[ExtractedContent] = None
    form_analysis: Optional[FormAnalysis] = None
    defenses: List[DefenseOutcome] = Field(default_factory=list)
    protection: ProtectionReport = Field(default_factory=ProtectionReport)
    submission: Optional[SubmissionResult] = None
    strategy_errors: Dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None
    started_at: datetime
    duration_ms: int = 0
