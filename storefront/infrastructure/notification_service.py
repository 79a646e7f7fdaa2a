from twilio.rest import Client
import logging
from storefront.core.config import settings
from storefront.domain.models import Order
from storefront.interfaces.INotifier import INotifier

logger = logging.getLogger(__name__)

class NotificationService(INotifier):
    def __init__(self, account_sid: str | None = None, auth_token: str | None = None,
                 from_number: str | None = None, admin_number: str | None = None):
        self.client = None
        self.enabled = False
        self.from_number = from_number or settings.TWILIO_FROM_NUMBER
        self.admin_number = admin_number or settings.ADMIN_PHONE_NUMBER

        account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        auth_token = auth_token or settings.TWILIO_AUTH_TOKEN

        # Only initialize if credentials exist in .env
        if account_sid and auth_token:
            try:
                self.client = Client(account_sid, auth_token)
                self.enabled = True
                logger.info("✅ NotificationService: Twilio Client Initialized")
            except Exception as e:
                logger.error(f"❌ Failed to initialize Twilio Client: {e}")
        else:
            logger.warning("⚠️ NotificationService: Credentials missing in .env. Notifications disabled.")

    def notify_order_confirmed(self, order: Order) -> None:
        """Tells the merchant a paid order is ready to prepare."""
        message_body = (
            f"🔔 *ORDER CONFIRMED*\n\n"
            f"🧾 Order: {order.order_number}\n"
            f"💳 Rail: {order.rail or 'unknown'}\n"
            f"🔗 Reference: {order.payment_reference}"
        )
        self._send(message_body)

    def alert_operator(self, subject: str, details: dict) -> None:
        lines = "\n".join(f"- {key}: {value}" for key, value in details.items())
        self._send(f"🚨 *{subject}*\n\n{lines}")

    def _send(self, message_body: str):
        if not self.enabled or not self.admin_number or not self.from_number:
            logger.info("⚠️ NotificationService disabled or Admin number missing.")
            return

        try:
            # Twilio requires the "whatsapp:" prefix
            from_number = f"whatsapp:{self.from_number}" if "whatsapp:" not in self.from_number else self.from_number
            to_number = f"whatsapp:{self.admin_number}" if "whatsapp:" not in self.admin_number else self.admin_number

            self.client.messages.create(
                from_=from_number,
                body=message_body,
                to=to_number
            )
            logger.info(f"✅ Admin Notification Sent to {self.admin_number}")
        except Exception as e:
            # Delivery is best effort, callers have already committed
            logger.error(f"❌ Failed to send Admin Notification: {e}")
