import enum


class Persona(str, enum.Enum):
    STUDENT = "student"
    PROVIDER = "provider"
    PARENT = "parent"
    DONOR = "donor"
    VOLUNTEER = "volunteer"


class FunnelStage(str, enum.Enum):
    AWARENESS = "awareness"
    CONSIDERATION = "consideration"
    DECISION = "decision"
    RETENTION = "retention"


class ContentType(str, enum.Enum):
    HERO = "hero"
    CTA = "cta"
    SERVICE = "service"
    EVENT = "event"
    TESTIMONIAL = "testimonial"
    LEAD_MAGNET = "lead_magnet"
    VIDEO = "video"


class ExperimentStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
