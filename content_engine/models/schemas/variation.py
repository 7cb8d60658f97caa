"""
Per-content-type presentation overrides carried by experiment variants.

Each content type has its own variation shape, tagged by ``kind``. A variant's
stored ``configuration_json`` must parse into the variation matching its
experiment's content type.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Variation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = None


class HeroVariation(_Variation):
    kind: Literal["hero_variation"] = "hero_variation"
    image_ref: Optional[str] = None
    cta_text: Optional[str] = None
    cta_link: Optional[str] = None
    secondary_cta_text: Optional[str] = None
    secondary_cta_link: Optional[str] = None
    button_variant: Optional[str] = None


class CtaVariation(_Variation):
    kind: Literal["cta_variation"] = "cta_variation"
    cta_text: Optional[str] = None
    cta_link: Optional[str] = None
    button_variant: Optional[str] = None


class ServiceVariation(_Variation):
    kind: Literal["service_variation"] = "service_variation"
    image_ref: Optional[str] = None


class EventVariation(_Variation):
    kind: Literal["event_variation"] = "event_variation"
    image_ref: Optional[str] = None
    registration_text: Optional[str] = None


class TestimonialVariation(_Variation):
    kind: Literal["testimonial_variation"] = "testimonial_variation"
    image_ref: Optional[str] = None
    attribution: Optional[str] = None


class LeadMagnetVariation(_Variation):
    kind: Literal["lead_magnet_variation"] = "lead_magnet_variation"
    image_ref: Optional[str] = None
    cta_text: Optional[str] = None


class VideoVariation(_Variation):
    kind: Literal["video_variation"] = "video_variation"
    image_ref: Optional[str] = Field(None, description="Poster/thumbnail image.")
    video_url: Optional[str] = None


VariantConfiguration = Annotated[
    Union[
        HeroVariation,
        CtaVariation,
        ServiceVariation,
        EventVariation,
        TestimonialVariation,
        LeadMagnetVariation,
        VideoVariation,
    ],
    Field(discriminator="kind"),
]

VARIATION_KIND_BY_CONTENT_TYPE = {
    "hero": "hero_variation",
    "cta": "cta_variation",
    "service": "service_variation",
    "event": "event_variation",
    "testimonial": "testimonial_variation",
    "lead_magnet": "lead_magnet_variation",
    "video": "video_variation",
}

_configuration_adapter = TypeAdapter(VariantConfiguration)


def parse_variant_configuration(raw):
    """Parses stored configuration JSON; raises pydantic.ValidationError on bad shapes."""
    if raw is None:
        return None
    return _configuration_adapter.validate_python(raw)
