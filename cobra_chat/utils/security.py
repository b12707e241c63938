"""
Input hygiene for the chat API.
Handles: message validation, text sanitization and user id masking in logs.
"""
from typing import Optional
from cobra_chat.utils.errors import ValidationError
from cobra_chat.utils.logger import logger


def mask_user_id(user_id: str) -> str:
    """Masks a user id for safe logging.
    Example: 9fQ2kLmZpX81 → 9f****pX81
    """
    if not user_id or len(user_id) <= 6:
        return "****"
    return user_id[:2] + "****" + user_id[-4:]


def sanitize_text(text: str, max_length: Optional[int] = None) -> str:
    """Sanitizes user text input.
    - Removes null bytes
    - Strips leading/trailing whitespace
    - Truncates to max_length when given
    """
    if not text:
        return ""
    
    # Remove null bytes (security risk)
    text = text.replace("\x00", "")
    text = text.strip()
    
    if max_length and len(text) > max_length:
        text = text[:max_length]
    
    return text


def validate_query(text: Optional[str], max_length: int) -> str:
    """Returns the sanitized query or raises ValidationError with a readable reason."""
    if text is None or not isinstance(text, str):
        raise ValidationError("Message must be a string.")
    
    cleaned = text.replace("\x00", "").strip()
    if not cleaned:
        raise ValidationError("Message cannot be empty.")
    if len(cleaned) > max_length:
        raise ValidationError(f"Message is too long ({len(cleaned)} characters, max {max_length}).")
    return cleaned


def safe_log(message: str, user_id: Optional[str] = None) -> None:
    """Logs a message with a masked user id."""
    if user_id:
        logger.info(f"[{mask_user_id(user_id)}] {message}")
    else:
        logger.info(message)
