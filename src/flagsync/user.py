from __future__ import annotations
import datetime
from typing import Any


type UserAttributeValue = str | int | float | datetime.datetime | list[str] | tuple[str, ...]

IDENTIFIER = "Identifier"
EMAIL = "Email"
COUNTRY = "Country"


class User:
    """
    The user object used for evaluating targeting rules and percentage
    options.

    identifier: Unique identifier of the user. Used for percentage option
      bucketing unless the setting names another attribute.
    email, country: Well-known attributes, addressable in conditions as
      "Email" and "Country".
    custom: Arbitrary attributes. Values may be strings, numbers, datetimes
      or lists of strings.
    """

    __slots__ = ("identifier", "email", "country", "custom")
    identifier: str
    email: str | None
    country: str | None
    custom: dict[str, UserAttributeValue]

    def __init__(
        self,
        identifier: str | None,
        email: str | None = None,
        country: str | None = None,
        custom: dict[str, UserAttributeValue] | None = None,
    ):
        if custom is not None:
            if not isinstance(custom, dict):
                raise TypeError(f"custom must be a dict, not {type(custom).__name__}")
            for k in custom:
                if not isinstance(k, str):
                    raise TypeError(f"custom attribute key must be a string, not {type(k).__name__}")
        self.identifier = identifier if identifier is not None else ""
        self.email = email
        self.country = country
        self.custom = dict(custom) if custom else {}

    def __repr__(self):
        return f"User({self.identifier!r})"

    def get_attribute(self, name: str) -> Any:
        match name:
            case "Identifier":
                return self.identifier
            case "Email":
                return self.email
            case "Country":
                return self.country
        return self.custom.get(name)

    def attributes(self) -> dict[str, Any]:
        """
        All the attributes of the user as a flat dict. Well-known attributes
        take precedence over custom attributes of the same name.
        """
        attrs: dict[str, Any] = {IDENTIFIER: self.identifier}
        if self.email is not None:
            attrs[EMAIL] = self.email
        if self.country is not None:
            attrs[COUNTRY] = self.country
        for k, v in self.custom.items():
            if k not in (IDENTIFIER, EMAIL, COUNTRY):
                attrs[k] = v
        return attrs
