"""Quantity conservation: the mass-balance rule every stage record obeys.

    quantity_out + loss_quantity ≤ quantity_in

Checked on create, on full update, and on any partial update touching one of
the three quantities (the whole triple is re-checked against the stored
values).  The individual bounds ``out ≤ in`` and ``loss ≤ in`` are implied
by the sum rule but are checked first so the error names the exact culprit.

Pure functions: no session, no I/O.
"""

from decimal import Decimal

from agritrace.middleware.exceptions import ConservationError, ValidationError

ZERO = Decimal("0")

QUANTITY_FIELDS = frozenset({"quantity_in", "quantity_out", "loss_quantity"})


def _as_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def validate(quantity_in, quantity_out=None, loss_quantity=None) -> None:
    """Raise unless the quantities satisfy the conservation invariant.

    ``quantity_out`` and ``loss_quantity`` default to zero when absent.

    Raises:
        ValidationError: quantity_in missing, or any quantity negative.
        ConservationError: out > in, loss > in, or out + loss > in.
    """
    if quantity_in is None:
        raise ValidationError("Quantity in is required")

    qty_in = _as_decimal(quantity_in)
    qty_out = _as_decimal(quantity_out)
    loss = _as_decimal(loss_quantity)

    for label, value in (
        ("Quantity in", qty_in),
        ("Quantity out", qty_out),
        ("Loss quantity", loss),
    ):
        if value < 0:
            raise ValidationError(f"{label} cannot be negative ({value:.2f})")

    if qty_out > qty_in:
        raise ConservationError(
            f"Quantity out ({qty_out:.2f}) cannot exceed quantity in ({qty_in:.2f})",
            qty_in, qty_out, loss,
        )
    if loss > qty_in:
        raise ConservationError(
            f"Loss quantity ({loss:.2f}) cannot exceed quantity in ({qty_in:.2f})",
            qty_in, qty_out, loss,
        )
    total = qty_out + loss
    if total > qty_in:
        raise ConservationError(
            f"Quantity out ({qty_out:.2f}) + loss quantity ({loss:.2f}) = {total:.2f} "
            f"exceeds quantity in ({qty_in:.2f})",
            qty_in, qty_out, loss,
        )


def is_conserved(quantity_in, quantity_out=None, loss_quantity=None) -> bool:
    try:
        validate(quantity_in, quantity_out, loss_quantity)
    except ValidationError:
        return False
    return True


def validate_changes(record, changes: dict) -> None:
    """Re-validate ``record`` merged with ``changes`` if any quantity changed.

    Partial updates that leave all three quantities untouched skip the
    check entirely.
    """
    if not QUANTITY_FIELDS & changes.keys():
        return
    validate(
        changes.get("quantity_in", record.quantity_in),
        changes.get("quantity_out", record.quantity_out),
        changes.get("loss_quantity", record.loss_quantity),
    )
