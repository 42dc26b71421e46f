"""Logging configuration for the billing service"""
import logging

from app.core.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Third-party clients that log every request at INFO
QUIET_LOGGERS = ("stripe", "httpx", "httpcore", "urllib3", "resend")


def setup_logging():
    """Configure root logging from LOG_LEVEL"""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S', force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # Operator alerts and signature rejections stay visible under a quiet LOG_LEVEL
    for logger in (operator_logger, security_logger):
        logger.setLevel(min(level, logging.WARNING))


# Webhook receipt and outcome
webhook_logger = logging.getLogger("webhooks")
# Rejected signatures and auth failures
security_logger = logging.getLogger("security")
# Failures an operator must act on (exhausted provider retries, unmatched events)
operator_logger = logging.getLogger("billing.operator")
