"""Basal metabolic rate and daily energy expenditure helpers."""
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"


class ActivityLevel(str, Enum):
    SEDENTARY = "SEDENTARY"  # little or no exercise
    LIGHTLY_ACTIVE = "LIGHTLY_ACTIVE"  # light exercise 1-3 days/week
    MODERATELY_ACTIVE = "MODERATELY_ACTIVE"  # moderate exercise 3-5 days/week
    VERY_ACTIVE = "VERY_ACTIVE"  # hard exercise 6-7 days/week
    EXTRA_ACTIVE = "EXTRA_ACTIVE"  # athletes, heavy physical labour


ACTIVITY_LEVEL_FACTORS: dict[ActivityLevel, float] = {
    ActivityLevel.SEDENTARY: 1.2,
    ActivityLevel.LIGHTLY_ACTIVE: 1.375,
    ActivityLevel.MODERATELY_ACTIVE: 1.55,
    ActivityLevel.VERY_ACTIVE: 1.725,
    ActivityLevel.EXTRA_ACTIVE: 1.9,
}


def basal_metabolic_rate(height_cm: float, weight_kg: float, age: int, gender: Gender) -> float:
    """Mifflin-St Jeor equation, kcal/day."""
    base = 10 * weight_kg + 6.25 * height_cm - 5 * age
    return base + 5 if Gender(gender) == Gender.MALE else base - 161


def total_daily_energy_expenditure(
    height_cm: float,
    weight_kg: float,
    age: int,
    gender: Gender,
    activity_level: ActivityLevel,
) -> float:
    """BMR times the activity factor, rounded half-up to two decimals."""
    bmr = basal_metabolic_rate(height_cm, weight_kg, age, gender)
    tdee = Decimal(bmr * ACTIVITY_LEVEL_FACTORS[ActivityLevel(activity_level)])
    return float(tdee.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
