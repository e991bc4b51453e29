from bookkeeper.services.bookkeeping.checkout_sessions import (
    edit_checkout_session,
    edit_checkout_session_billing_address,
    process_purchase_bookkeeping_for_checkout_session,
    process_setup_intent_for_checkout_session,
    process_stripe_charge_for_checkout_session,
    reconcile_charge_for_checkout_session,
)
from bookkeeper.services.bookkeeping.customers import create_customer_bookkeeping
from bookkeeper.services.bookkeeping.fee_calculations import (
    create_and_finalize_subscription_fee_calculation,
    create_checkout_session_fee_calculation,
    create_fee_calculation_for_checkout_session,
    finalize_fee_calculation,
)
from bookkeeper.services.bookkeeping.invoices import (
    create_initial_invoice_for_purchase,
    update_invoice_status_to_reflect_latest_payment,
    update_invoice_transaction,
)
from bookkeeper.services.bookkeeping.pricing_models import (
    create_pricing_model_bookkeeping,
    safely_insert_pricing_model,
)
from bookkeeper.services.bookkeeping.purchases import (
    update_purchase_status_to_reflect_latest_payment,
)
from bookkeeper.services.bookkeeping.subscriptions import create_subscription_workflow
from bookkeeper.services.bookkeeping.usage_meters import create_usage_meter_transaction

__all__ = [
    "create_and_finalize_subscription_fee_calculation",
    "create_checkout_session_fee_calculation",
    "create_customer_bookkeeping",
    "create_fee_calculation_for_checkout_session",
    "create_initial_invoice_for_purchase",
    "create_pricing_model_bookkeeping",
    "create_subscription_workflow",
    "create_usage_meter_transaction",
    "edit_checkout_session",
    "edit_checkout_session_billing_address",
    "finalize_fee_calculation",
    "process_purchase_bookkeeping_for_checkout_session",
    "process_setup_intent_for_checkout_session",
    "process_stripe_charge_for_checkout_session",
    "reconcile_charge_for_checkout_session",
    "safely_insert_pricing_model",
    "update_invoice_status_to_reflect_latest_payment",
    "update_invoice_transaction",
    "update_purchase_status_to_reflect_latest_payment",
]
