import httpx
import structlog

from . import config

logger = structlog.get_logger()


class Msg91Sender:
    """Sends OTP codes through the MSG91 flow API. Errors are logged, not raised."""

    def __init__(self, auth_key=None, template_id=None, endpoint=config.MSG91_URL, timeout: float = 10.0):
        self.auth_key = auth_key
        self.template_id = template_id
        self.endpoint = endpoint
        self.timeout = timeout

    def send_otp(self, phone_number: str, otp: str) -> bool:
        if not self.auth_key or not self.template_id:
            logger.info("sms_skipped", reason="msg91 not configured")
            return False
        body = {
            "template_id": self.template_id,
            "short_url": "0",
            "recipients": [{"mobiles": f"91{phone_number}", "otp": otp}],
        }
        try:
            r = httpx.post(
                self.endpoint,
                json=body,
                headers={"authkey": self.auth_key, "accept": "application/json"},
                timeout=self.timeout,
            )
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("sms_failed", error=str(e))
            return False
        if data.get("type") != "success":
            logger.error("sms_failed", error=data.get("message", "MSG91 returned a non-success status."))
            return False
        logger.info("sms_sent", template_id=self.template_id)
        return True


def default_sender() -> Msg91Sender:
    return Msg91Sender(config.MSG91_AUTH_KEY, config.MSG91_TEMPLATE_ID)
