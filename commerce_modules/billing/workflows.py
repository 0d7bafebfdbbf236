"""
Billing invoice workflow.

A quarter's invoice moves ``pending -> generated -> paid``; pending or
generated invoices may be waived.  ``paid`` and ``waived`` are terminal.
Generation is guarded: a quarter can only be invoiced once it has ended
in the org's timezone.
"""

from commerce_kernel.domain.workflow import Guard, Transition, Workflow
from commerce_kernel.exceptions import InvalidInvoiceTransitionError
from commerce_kernel.logging_config import get_logger
from commerce_modules.billing.models import BillingQuarter, InvoiceStatus

logger = get_logger("modules.billing.workflows")

QUARTER_CLOSED = Guard(
    name="quarter_closed",
    description="The calendar quarter has ended in the org's timezone",
)

_S = InvoiceStatus

BILLING_INVOICE_WORKFLOW = Workflow(
    name="billing_invoice",
    description="Quarterly governance fee invoice",
    initial_state=_S.PENDING.value,
    states=tuple(s.value for s in InvoiceStatus),
    transitions=(
        Transition(_S.PENDING.value, _S.GENERATED.value, action="generate", guard=QUARTER_CLOSED),
        Transition(_S.GENERATED.value, _S.PAID.value, action="mark_paid"),
        Transition(_S.PENDING.value, _S.WAIVED.value, action="waive"),
        Transition(_S.GENERATED.value, _S.WAIVED.value, action="waive"),
    ),
    terminal_states=(_S.PAID.value, _S.WAIVED.value),
)

logger.info(
    "billing_workflow_defined",
    extra={
        "workflow": BILLING_INVOICE_WORKFLOW.name,
        "state_count": len(BILLING_INVOICE_WORKFLOW.states),
        "transition_count": len(BILLING_INVOICE_WORKFLOW.transitions),
    },
)


def check_invoice_transition(quarter: BillingQuarter, to_status: InvoiceStatus) -> Transition:
    """
    Look up the transition for ``quarter`` or raise.

    Guards are reported on the returned transition; the caller evaluates
    them because they need the clock and the org timezone.
    """
    transition = BILLING_INVOICE_WORKFLOW.find_transition(
        quarter.invoice_status.value, to_status.value
    )
    if transition is None:
        raise InvalidInvoiceTransitionError(
            quarter.quarter_key.label, quarter.invoice_status.value, to_status.value
        )
    return transition
