"""Default form inference: derive a user-task form from the ``{var}`` tokens of an Ask prompt.

    "Ask employee for {name} and {email}"
    -> form with a required text field ``name`` and a required email field ``email``
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

_VAR_RE = re.compile(r"\{([^}]+)\}")
_TITLE_PREFIX_RE = re.compile(r"^(ask|request|get|collect|gather|obtain)\s+", re.IGNORECASE)
_TITLE_JOIN_RE = re.compile(r"\s+(for|about|to provide)\s+", re.IGNORECASE)

# Checked in order; the first matching bucket wins.
_TYPE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("email", ("email", "e-mail")),
    ("datetime", ("datetime", "timestamp")),
    ("time", ("time",)),
    ("date", ("date", "birthday", "dob", "deadline", "expiry", "expiration")),
    ("textarea", ("description", "notes", "comments", "details", "reason", "justification", "feedback")),
    ("number", ("age", "count", "quantity", "amount", "price", "cost", "number", "qty")),
    ("select", ("status", "type", "category", "department", "priority", "level")),
    ("checkbox", ("agree", "accept", "consent", "confirmed")),
]

_SELECT_OPTIONS: dict[str, list[tuple[str, str]]] = {
    "status": [("pending", "Pending"), ("approved", "Approved"), ("rejected", "Rejected")],
    "priority": [("low", "Low"), ("medium", "Medium"), ("high", "High"), ("critical", "Critical")],
    "department": [
        ("engineering", "Engineering"),
        ("sales", "Sales"),
        ("marketing", "Marketing"),
        ("hr", "Human Resources"),
        ("finance", "Finance"),
    ],
}
_DEFAULT_OPTIONS = [("option1", "Option 1"), ("option2", "Option 2"), ("option3", "Option 3")]


@dataclass(frozen=True)
class ValidationRule:
    type: str
    message: Optional[str] = None
    value: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type}
        if self.value is not None:
            out["value"] = self.value
        if self.message is not None:
            out["message"] = self.message
        return out


@dataclass(frozen=True)
class SelectOption:
    value: str
    label: str

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "label": self.label}


@dataclass(frozen=True)
class FormField:
    id: str
    name: str
    label: str
    type: str
    rules: tuple[ValidationRule, ...] = ()
    placeholder: Optional[str] = None
    options: Optional[tuple[SelectOption, ...]] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "label": self.label,
            "type": self.type,
            "validation": {"rules": [r.to_dict() for r in self.rules]},
        }
        if self.placeholder is not None:
            out["placeholder"] = self.placeholder
        if self.options is not None:
            out["options"] = [o.to_dict() for o in self.options]
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FormField":
        rules = tuple(
            ValidationRule(type=r["type"], message=r.get("message"), value=r.get("value"))
            for r in (data.get("validation") or {}).get("rules", [])
        )
        options = data.get("options")
        return cls(
            id=data["id"],
            name=data["name"],
            label=data.get("label", data["name"]),
            type=data.get("type", "text"),
            rules=rules,
            placeholder=data.get("placeholder"),
            options=tuple(SelectOption(o["value"], o["label"]) for o in options) if options is not None else None,
        )


@dataclass(frozen=True)
class FormDefinition:
    id: str
    title: str
    description: str = ""
    fields: tuple[FormField, ...] = field(default_factory=tuple)
    submit_button_label: str = "Submit"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "fields": [f.to_dict() for f in self.fields],
            "submitButtonLabel": self.submit_button_label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FormDefinition":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            fields=tuple(FormField.from_dict(f) for f in data.get("fields", [])),
            submit_button_label=data.get("submitButtonLabel", "Submit"),
        )


def extract_variables(text: str) -> list[str]:
    """Distinct ``{var}`` names in first-appearance order, whitespace trimmed."""
    seen: list[str] = []
    for m in _VAR_RE.finditer(text):
        name = m.group(1).strip()
        if name and name not in seen:
            seen.append(name)
    return seen


def infer_field_type(name: str) -> str:
    lower = name.lower()
    for field_type, keywords in _TYPE_KEYWORDS:
        if any(k in lower for k in keywords):
            return field_type
        # "message" contains "age"; only the exact word is free text.
        if field_type == "textarea" and lower == "message":
            return "textarea"
    if lower.startswith("is") or lower.startswith("has"):
        return "checkbox"
    return "text"


def format_label(name: str) -> str:
    """first_name -> First Name, emailAddress -> Email Address."""
    text = re.sub(r"[_-]", " ", name)
    if text != text.upper():
        text = re.sub(r"([A-Z])", r" \1", text)
    return " ".join(word[:1].upper() + word[1:].lower() for word in text.split())


def infer_field(name: str, field_id: str) -> FormField:
    compact = re.sub(r"[_-]", "", name.lower())
    field_type = infer_field_type(compact)
    label = format_label(name)
    rules = [ValidationRule("required", f"{label} is required")]
    placeholder = None
    options = None

    if field_type == "email":
        rules.append(ValidationRule("email", "Must be a valid email address"))
        placeholder = "name@example.com"
    elif field_type == "number":
        if "age" in compact:
            rules.append(ValidationRule("min", "Age must be positive", 0))
            rules.append(ValidationRule("max", "Must be a valid age", 120))
        else:
            rules.append(ValidationRule("min", "Must be a positive number", 0))
    elif field_type == "date":
        placeholder = "Select a date"
    elif field_type == "textarea":
        placeholder = "Enter details..."
        rules.append(ValidationRule("maxLength", value=5000))
    elif field_type == "select":
        choices = _DEFAULT_OPTIONS
        for key, values in _SELECT_OPTIONS.items():
            if key in compact:
                choices = values
                break
        options = tuple(SelectOption(v, lbl) for v, lbl in choices)

    return FormField(
        id=field_id,
        name=name,
        label=label,
        type=field_type,
        rules=tuple(rules),
        placeholder=placeholder,
        options=options,
    )


def form_title(prompt: str) -> str:
    """"Ask employee for vacation details" -> "Employee Vacation Details"."""
    title = _TITLE_PREFIX_RE.sub("", prompt)
    title = _TITLE_JOIN_RE.sub(" ", title, count=1)
    title = " ".join(word[:1].upper() + word[1:].lower() for word in title.split(" "))
    title = re.sub(r"\s+", " ", _VAR_RE.sub("", title)).strip()
    return title or "User Input Form"


def infer_form(prompt: str, task_id: str) -> FormDefinition:
    """Build the form for one user task. A prompt without variables gets an empty form."""
    variables = extract_variables(prompt)
    if not variables:
        return FormDefinition(id=f"form-{task_id}", title="User Input", description=prompt)
    fields = tuple(infer_field(name, f"{task_id}-field-{i}") for i, name in enumerate(variables))
    return FormDefinition(
        id=f"form-{task_id}",
        title=form_title(prompt),
        description=prompt,
        fields=fields,
    )
