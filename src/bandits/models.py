"""Bandit model configuration models."""

from pydantic import Field

from src.flags.models import WireModel


class BanditNumericAttributeCoefficient(WireModel):
    attribute_key: str
    coefficient: float
    missing_value_coefficient: float


class BanditCategoricalAttributeCoefficient(WireModel):
    attribute_key: str
    missing_value_coefficient: float
    value_coefficients: dict[str, float]


class BanditCoefficients(WireModel):
    action_key: str
    intercept: float
    subject_numeric_coefficients: list[BanditNumericAttributeCoefficient] = []
    subject_categorical_coefficients: list[BanditCategoricalAttributeCoefficient] = []
    action_numeric_coefficients: list[BanditNumericAttributeCoefficient] = []
    action_categorical_coefficients: list[BanditCategoricalAttributeCoefficient] = []


class BanditModelData(WireModel):
    gamma: float = Field(ge=0)
    default_action_score: float
    action_probability_floor: float = Field(ge=0, le=1)
    coefficients: dict[str, BanditCoefficients]


class BanditParameters(WireModel):
    bandit_key: str
    model_name: str
    model_version: str
    updated_at: str | None = None
    model_data: BanditModelData


class BanditVariation(WireModel):
    """Links a flag variation to the bandit that picks its action."""

    key: str
    flag_key: str
    allocation_key: str | None = None
    variation_key: str
    variation_value: str


class BanditReference(WireModel):
    model_version: str
    flag_variations: list[BanditVariation] = []
