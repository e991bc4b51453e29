from bookkeeper.models.organization import (  # noqa: F401
    Country,
    Organization,
    StripeConnectContractType,
)
from bookkeeper.models.billing import (  # noqa: F401
    BillingPeriod,
    BillingPeriodItem,
    BillingPeriodStatus,
    CheckoutSession,
    CheckoutSessionStatus,
    CheckoutSessionType,
    Customer,
    Discount,
    DiscountAmountType,
    DiscountRedemption,
    FeeCalculation,
    FeeCalculationType,
    IntervalUnit,
    Invoice,
    InvoiceCheckoutSession,
    InvoiceLineItem,
    InvoiceStatus,
    Payment,
    PaymentMethodType,
    PaymentStatus,
    Price,
    PriceType,
    PricingModel,
    Product,
    ProductCheckoutSession,
    Purchase,
    PurchaseCheckoutSession,
    PurchaseStatus,
    Subscription,
    SubscriptionItem,
    SubscriptionItemType,
    SubscriptionStatus,
    UsageMeter,
    UsageMeterAggregationType,
)
from bookkeeper.models.events import (  # noqa: F401
    Event,
    EventNoun,
    EventType,
    LedgerCommand,
    LedgerCommandType,
)
