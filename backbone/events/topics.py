"""Well-known domain events. Each bounded context announces Created/Updated/Deleted."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from backbone.events.registry import EventRegistry


class DomainEvents:
    """Event names published by the business modules."""

    USER_CREATED = "UserCreated"
    USER_UPDATED = "UserUpdated"
    USER_DELETED = "UserDeleted"

    CHALLENGE_CREATED = "ChallengeCreated"
    CHALLENGE_UPDATED = "ChallengeUpdated"
    CHALLENGE_DELETED = "ChallengeDeleted"

    FOCUS_AREA_CREATED = "FocusAreaCreated"
    FOCUS_AREA_UPDATED = "FocusAreaUpdated"
    FOCUS_AREA_DELETED = "FocusAreaDeleted"

    # EvaluationUpdated is what the evaluation service emits on completion
    EVALUATION_CREATED = "EvaluationCreated"
    EVALUATION_UPDATED = "EvaluationUpdated"
    EVALUATION_DELETED = "EvaluationDeleted"

    PERSONALITY_CREATED = "PersonalityCreated"
    PERSONALITY_UPDATED = "PersonalityUpdated"
    PERSONALITY_DELETED = "PersonalityDeleted"

    RECOMMENDATION_CREATED = "RecommendationCreated"
    RECOMMENDATION_UPDATED = "RecommendationUpdated"
    RECOMMENDATION_DELETED = "RecommendationDeleted"


# Payload contracts (validated at publish time). Publishers may send camelCase keys;
# handlers always receive snake_case field names.


class _EntityPayload(BaseModel):
    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)


class UserPayload(_EntityPayload):
    user_id: str = Field(min_length=1)


class ChallengePayload(_EntityPayload):
    challenge_id: str = Field(min_length=1)
    user_id: str | None = None
    focus_area_id: str | None = None


class FocusAreaPayload(_EntityPayload):
    focus_area_id: str = Field(min_length=1)
    user_id: str | None = None


class EvaluationPayload(_EntityPayload):
    evaluation_id: str = Field(min_length=1)
    user_id: str | None = None
    challenge_id: str | None = None


class PersonalityPayload(_EntityPayload):
    personality_id: str = Field(min_length=1)
    user_id: str | None = None


class RecommendationPayload(_EntityPayload):
    recommendation_id: str = Field(min_length=1)
    user_id: str | None = None


# context name -> (cache entity type, id field, payload schema)
BOUNDED_CONTEXTS: dict[str, tuple[str, str, type[BaseModel]]] = {
    "User": ("user", "user_id", UserPayload),
    "Challenge": ("challenge", "challenge_id", ChallengePayload),
    "FocusArea": ("focusarea", "focus_area_id", FocusAreaPayload),
    "Evaluation": ("evaluation", "evaluation_id", EvaluationPayload),
    "Personality": ("personality", "personality_id", PersonalityPayload),
    "Recommendation": ("recommendation", "recommendation_id", RecommendationPayload),
}

MUTATIONS = ("Created", "Updated", "Deleted")


def register_domain_events(registry: EventRegistry) -> EventRegistry:
    """Register every Created/Updated/Deleted event of every bounded context."""
    for context, (entity_type, _id_field, schema) in BOUNDED_CONTEXTS.items():
        for mutation in MUTATIONS:
            registry.register(
                f"{context}{mutation}",
                schema=schema,
                description=f"{context} entity {mutation.lower()}",
                category=entity_type,
            )
    return registry


def build_default_registry() -> EventRegistry:
    return register_domain_events(EventRegistry())
