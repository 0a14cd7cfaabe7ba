from typing import Any, Dict, Optional
import logging
import re

logger = logging.getLogger(__name__)

class AppError(Exception):
    def __init__(
        self,
        message: str,
        status_code: int = 500,
        user_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.user_message = user_message or "An error occurred. Please try again later."
        self.details = details or {}
        super().__init__(self.message)

# Checked in order; the first pattern found in the error text wins.
ERROR_STATUS_PATTERNS = [
    (re.compile(r'invalid api key', re.IGNORECASE), 401),
    (re.compile(r'not found', re.IGNORECASE), 404),
    (re.compile(r'permission', re.IGNORECASE), 403),
    (re.compile(r'rate limit', re.IGNORECASE), 429),
]

class ErrorHandler:
    @staticmethod
    def status_for_error(error: Exception) -> int:
        """Map an unhandled error to the HTTP status the webhook should answer with"""
        if isinstance(error, AppError) and error.status_code != 500:
            return error.status_code
        text = str(error)
        for pattern, status in ERROR_STATUS_PATTERNS:
            if pattern.search(text):
                return status
        return 500

    @staticmethod
    def handle_sms_error(error: Exception) -> str:
        logger.error(f"SMS error: {str(error)}")
        return "Message couldn't be sent. Please try again later."

    @staticmethod
    def handle_ai_error(error: Exception) -> None:
        logger.error(f"Language model error: {str(error)}")

    @staticmethod
    def handle_voice_error(error: Exception) -> str:
        logger.error(f"Voice handler error: {str(error)}", exc_info=True)
        return "We're sorry, but we encountered an error processing your call. Please try again later."
