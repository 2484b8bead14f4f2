from app.models.entitlement import Subscription
from app.models.billing import BillingWebhookEvent
