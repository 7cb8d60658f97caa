from pydantic import BaseModel


def reject_explicit_nulls(model: BaseModel, fields: tuple[str, ...]) -> None:
    """
    Partial updates skip omitted fields, but a field sent as null would be
    written as NULL. Raises ValueError for those that back NOT NULL columns.
    """
    nulled = [
        name
        for name in fields
        if name in model.model_fields_set and getattr(model, name) is None
    ]
    if nulled:
        raise ValueError(f"Fields cannot be null: {', '.join(nulled)}")
