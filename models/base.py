from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class DocumentModel(BaseModel):
    """
    Base for every persisted document.

    Attributes are snake_case in Python; the stored JSON documents use the
    camelCase field names (subOrgId, debitAmount, poLinks, ...).
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_document(self) -> dict:
        """Serialise to the stored document shape, omitting unset (None) fields."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def changes_from(self, before: "DocumentModel") -> dict:
        """
        Partial document of fields that differ from *before*.

        A field that became None is included as None so the write clears it.
        """
        old = before.model_dump(by_alias=True)
        new = self.model_dump(by_alias=True)
        return {k: v for k, v in new.items() if old.get(k) != v}
