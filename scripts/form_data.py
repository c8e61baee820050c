"""Form 15G/15H data records and the profile-to-form mapping.

A form data record is a flat, immutable set of string/boolean values keyed by
canonical field key. Each form type owns a closed set of keys; anything else
is rejected with ``UnknownFieldKeyError``.
"""

import datetime as dt
import logging
from enum import Enum
from typing import ClassVar, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from form_errors import UnknownFieldKeyError

logger = logging.getLogger(__name__)

SENIOR_CITIZEN_AGE = 60


class FormType(str, Enum):
    FORM_15G = "15G"
    FORM_15H = "15H"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown form type: {value!r} (expected 15G or 15H)") from None


class FieldKey(str, Enum):
    NAME = "name"
    PAN = "pan"
    STATUS_INDIVIDUAL = "status_individual"
    STATUS_HUF = "status_huf"
    PREVIOUS_YEAR = "previous_year"
    ASSESSMENT_YEAR = "assessment_year"
    RESIDENT_YES = "resident_yes"
    RESIDENT_NO = "resident_no"
    ADDRESS = "address"
    ADDR_FLAT = "addr_flat"
    ADDR_PREMISES = "addr_premises"
    ADDR_STREET = "addr_street"
    ADDR_AREA = "addr_area"
    ADDR_CITY = "addr_city"
    ADDR_STATE = "addr_state"
    ADDR_PIN = "addr_pin"
    EMAIL = "email"
    PHONE = "phone"
    ASSESSED_YES = "assessed_yes"
    ASSESSED_NO = "assessed_no"
    LATEST_AY = "latest_ay"
    ESTIMATED_INCOME_CURRENT = "estimated_income_current"
    ESTIMATED_INCOME_TOTAL = "estimated_income_total"
    BOID = "boid"
    NATURE_INCOME = "nature_income"
    SECTION = "section"
    INCOME_AMOUNT = "income_amount"
    FORM_COUNT = "form_count"
    FORM_AMOUNT = "form_amount"
    SIGNATURE = "signature"
    PLACE_DATE = "place_date"
    DECLARATION_FY_END = "declaration_fy_end"
    DECLARATION_AY = "declaration_ay"


class FieldKind(str, Enum):
    TEXT = "text"
    MULTILINE = "multiline"
    CHECKBOX = "checkbox"
    SIGNATURE = "signature"


CHECKBOX_KEYS = frozenset({
    FieldKey.STATUS_INDIVIDUAL, FieldKey.STATUS_HUF,
    FieldKey.RESIDENT_YES, FieldKey.RESIDENT_NO,
    FieldKey.ASSESSED_YES, FieldKey.ASSESSED_NO,
})
MULTILINE_KEYS = frozenset({FieldKey.ADDRESS})
RIGHT_ALIGNED_KEYS = frozenset({
    FieldKey.INCOME_AMOUNT, FieldKey.FORM_AMOUNT,
    FieldKey.ESTIMATED_INCOME_CURRENT, FieldKey.ESTIMATED_INCOME_TOTAL,
})


def field_kind(key):
    key = FieldKey(key)
    if key is FieldKey.SIGNATURE:
        return FieldKind.SIGNATURE
    if key in CHECKBOX_KEYS:
        return FieldKind.CHECKBOX
    if key in MULTILINE_KEYS:
        return FieldKind.MULTILINE
    return FieldKind.TEXT


def field_alignment(key):
    return "right" if FieldKey(key) in RIGHT_ALIGNED_KEYS else "left"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class FormData(BaseModel):
    """Fields shared by both declaration forms."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: Optional[str] = None
    pan: Optional[str] = None
    previous_year: Optional[str] = None
    assessment_year: Optional[str] = None
    resident_yes: bool = False
    resident_no: bool = False
    assessed_yes: bool = False
    assessed_no: bool = False
    latest_ay: Optional[str] = None
    estimated_income_current: Optional[str] = None
    estimated_income_total: Optional[str] = None
    boid: Optional[str] = None
    nature_income: Optional[str] = None
    section: Optional[str] = None
    income_amount: Optional[str] = None
    form_count: Optional[str] = None
    form_amount: Optional[str] = None
    signature: Optional[str] = None
    place_date: Optional[str] = None
    declaration_fy_end: Optional[str] = None
    declaration_ay: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _numbers_as_text(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    def filled_items(self):
        """(FieldKey, value) pairs to place, in declaration order.

        Empty strings and unticked checkboxes have nothing to place.
        """
        items = []
        for name, value in self.model_dump().items():
            if value is None or value == "" or value is False:
                continue
            items.append((FieldKey(name), value))
        return items


class Form15GData(FormData):
    form_type: ClassVar[FormType] = FormType.FORM_15G

    status_individual: bool = False
    status_huf: bool = False
    addr_flat: Optional[str] = None
    addr_premises: Optional[str] = None
    addr_street: Optional[str] = None
    addr_area: Optional[str] = None
    addr_city: Optional[str] = None
    addr_state: Optional[str] = None
    addr_pin: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class Form15HData(FormData):
    form_type: ClassVar[FormType] = FormType.FORM_15H

    address: Optional[str] = None


FORM_DATA_MODELS = {
    FormType.FORM_15G: Form15GData,
    FormType.FORM_15H: Form15HData,
}

FORM_FIELD_KEYS = {
    form_type: frozenset(FieldKey(name) for name in model.model_fields)
    for form_type, model in FORM_DATA_MODELS.items()
}


def check_field_keys(form_type, keys):
    """Raise UnknownFieldKeyError if any key is outside the form's field set."""
    form_type = FormType.parse(form_type)
    allowed = {k.value for k in FORM_FIELD_KEYS[form_type]}
    unknown = sorted(str(getattr(k, "value", k)) for k in keys if str(getattr(k, "value", k)) not in allowed)
    if unknown:
        raise UnknownFieldKeyError(
            f"Unknown field key(s) for Form {form_type.value}: {', '.join(unknown)}",
            form_type=form_type.value, keys=unknown,
        )


def make_form_data(form_type, values: Mapping) -> FormData:
    """Build the immutable record for a form type from a plain mapping."""
    form_type = FormType.parse(form_type)
    check_field_keys(form_type, values.keys())
    try:
        return FORM_DATA_MODELS[form_type](**values)
    except ValidationError as e:
        extra = [".".join(str(p) for p in err["loc"]) for err in e.errors() if err["type"] == "extra_forbidden"]
        if extra:
            raise UnknownFieldKeyError(f"Unknown field key(s): {', '.join(extra)}", keys=extra) from e
        raise


# ---------------------------------------------------------------------------
# Profile mapping
# ---------------------------------------------------------------------------

class Profile(BaseModel):
    """Declarant profile as stored by the application."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    pan: str = ""
    dob_ddmmyyyy: str = ""
    residential_status: str = "Indian"
    status: str = "Individual"
    addr_flat: str = ""
    addr_premises: str = ""
    addr_street: str = ""
    addr_area: str = ""
    addr_city: str = ""
    addr_state: str = ""
    addr_pin: str = ""
    email: str = ""
    phone: str = ""
    assessed_to_tax: str = "No"
    latest_ay: str = ""
    estimated_income_current: float = Field(0, alias="estimatedIncomeCurrent")
    estimated_income_total: float = Field(0, alias="estimatedIncomeTotal")
    assessment_year_previous: str = Field("", alias="assessmentYearPrevious")
    form_count: int = Field(0, alias="formCount")
    form_amount: float = Field(0, alias="formAmount")
    boid: str = ""
    signature: Optional[str] = None
    financial_year: str = Field("", alias="financialYear")
    assessment_year: str = Field("", alias="assessmentYear")
    financial_year_end: str = Field("", alias="financialYearEnd")


class Dividend(BaseModel):
    model_config = ConfigDict(extra="ignore")

    total: float = 0


def format_indian_currency(amount, prefix="Rs. "):
    """Format with Indian digit grouping: 1,50,000.00"""
    sign = "-" if amount < 0 else ""
    integer, decimal = f"{abs(amount):.2f}".split(".")
    head, tail = integer[:-3], integer[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    grouped = ",".join(groups + [tail]) if groups else tail
    return f"{sign}{prefix}{grouped}.{decimal}"


def year_label(start_year):
    """2024 -> '2024-25'"""
    return f"{start_year}-{str(start_year + 1)[-2:]}"


def calculate_age(dob_ddmmyyyy, today=None):
    today = today or dt.date.today()
    day, month, year = (int(part) for part in dob_ddmmyyyy.split("/"))
    age = today.year - year
    if (today.month, today.day) < (month, day):
        age -= 1
    return age


def form_type_for_age(age):
    return FormType.FORM_15G if age < SENIOR_CITIZEN_AGE else FormType.FORM_15H


def form_type_for_profile(profile, today=None):
    profile = profile if isinstance(profile, Profile) else Profile.model_validate(profile)
    return form_type_for_age(calculate_age(profile.dob_ddmmyyyy, today))


def profile_to_form_data(form_type, profile, dividend, today=None) -> FormData:
    """Map a stored profile and a dividend row onto the form's field record."""
    form_type = FormType.parse(form_type)
    profile = profile if isinstance(profile, Profile) else Profile.model_validate(profile)
    dividend = dividend if isinstance(dividend, Dividend) else Dividend.model_validate(dividend)
    today = today or dt.date.today()

    assessment_year = profile.assessment_year or year_label(today.year + 1)
    values = {
        "name": profile.name,
        "pan": profile.pan,
        "previous_year": profile.financial_year or year_label(today.year - 1),
        "assessment_year": assessment_year,
        "resident_yes": profile.residential_status != "NRI",
        "resident_no": profile.residential_status == "NRI",
        "assessed_yes": profile.assessed_to_tax == "Yes",
        "assessed_no": profile.assessed_to_tax == "No",
        "latest_ay": profile.assessment_year_previous or profile.latest_ay or assessment_year,
        "estimated_income_current": format_indian_currency(
            profile.estimated_income_current or dividend.total),
        "estimated_income_total": format_indian_currency(profile.estimated_income_total),
        "boid": profile.boid,
        "nature_income": "Dividend",
        "section": "194",
        "income_amount": format_indian_currency(dividend.total),
        "form_count": str(profile.form_count),
        "form_amount": format_indian_currency(profile.form_amount),
        "signature": profile.signature,
        "place_date": f"{profile.addr_city or 'Place'}, {today:%d/%m/%Y}",
        "declaration_fy_end": profile.financial_year_end or f"31-03-{today.year}",
        "declaration_ay": assessment_year,
    }

    address_parts = [
        profile.addr_flat, profile.addr_premises, profile.addr_street,
        profile.addr_area, profile.addr_city, profile.addr_state, profile.addr_pin,
    ]
    if form_type is FormType.FORM_15G:
        values.update({
            "status_individual": profile.status == "Individual",
            "status_huf": profile.status == "HUF",
            "addr_flat": profile.addr_flat,
            "addr_premises": profile.addr_premises,
            "addr_street": profile.addr_street,
            "addr_area": profile.addr_area,
            "addr_city": profile.addr_city,
            "addr_state": profile.addr_state,
            "addr_pin": profile.addr_pin,
            "email": profile.email,
            "phone": profile.phone,
        })
    else:
        values["address"] = ", ".join(part for part in address_parts if part)

    logger.debug("Mapped profile %s onto Form %s", profile.pan or "<no pan>", form_type.value)
    return make_form_data(form_type, values)
