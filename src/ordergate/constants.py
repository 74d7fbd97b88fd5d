"""
Application constants for ordergate.

This module contains user-facing message templates shared across the
authorization components, plus small formatting helpers.
"""

# Throttling
RATE_LIMITED_MESSAGE = "⏳ Too many commands. Please wait {remaining_seconds} seconds."
COOLDOWN_MESSAGE = (
    "⏳ {command} command for this order has already been processed.\n\n"
    "Please wait {remaining_display} before trying again."
)

# Group security
GROUP_COMMANDS_DISABLED_MESSAGE = "🔒 Group commands are disabled.\n\nPlease DM me to use commands."
GROUP_ORDER_NOT_VERIFIED_MESSAGE = (
    "⚠️ This order is not yet verified.\n\n"
    "Please DM me to verify your order first before using commands in groups."
)

# Claims
CLAIMED_BY_ANOTHER_MESSAGE = "❌ This order has already been claimed by another number."
CLAIM_VIA_DM_MESSAGE = (
    "⚠️ This order is not yet verified.\n\n"
    "Please DM me with the same command to verify your order first."
)
EMAIL_CLAIM_PROMPT_MESSAGE = (
    "📧 Please reply with the email address you used when ordering to verify this order.\n\n"
    "Send only the email address, for example: `name@example.com`"
)
EMAIL_NOT_AVAILABLE_MESSAGE = "❌ Cannot verify. Email information is not available for this order."
EMAIL_MISMATCH_MESSAGE = "❌ Email does not match order data. Please try again."
EMAIL_CLAIM_SUCCESS_MESSAGE = "✅ Verification successful! This order is now linked to your number."
ORDER_ALREADY_CLAIMED_MESSAGE = "❌ This order was just claimed by another number."

# Username validation
USERNAME_DM_FIRST_MESSAGE = (
    "🔐 *Username Verification Required*\n\n"
    "Please DM me first to verify your username before using commands in groups."
)
USERNAME_NOT_AVAILABLE_MESSAGE = "❌ Cannot verify. Username information not available for this order."
USERNAME_MATCH_MESSAGE = "✅ Username verified successfully!"
USERNAME_MISMATCH_MESSAGE = "❌ Username does not match our records."

# Mapping ownership
USER_NOT_REGISTERED_MESSAGE = (
    "❌ Your account is not registered with the bot.\n"
    "Please contact WhatsApp support team to register."
)
BOT_DISABLED_MESSAGE = "🔒 Bot is disabled for your account. Please contact admin."
SUSPENDED_MESSAGE = "⛔ Your account has been suspended due to too many violations."
WA_NOT_MATCH_MESSAGE = "❌ Order ID does not belong to you."
OWNERSHIP_ERROR_MESSAGE = "⚠️ Unable to verify your account. Please try again later."
WHATSAPP_VALIDATION_NOTE = "[{date}] Validated via WhatsApp"
AUTO_CREATED_NOTE = "Auto-created on first interaction (Order #{external_order_id})"
SELF_REGISTERED_NOTE = "Self-registered via WhatsApp DM"

# Username verification dialog
USERNAME_PROMPT_MESSAGE = (
    "🔐 *Username Verification Required*\n\n"
    "To process Order #{order_id}, please verify your identity.\n\n"
    "📝 *Reply with your panel username:*\n\n"
    'Example: If your username is "john123", just reply:\n'
    "john123\n\n"
    "⏱️ This verification expires in {expiry_minutes} minutes."
)
USERNAME_VERIFIED_MESSAGE = "✅ Username verified! Processing your request..."
USERNAME_RETRY_MESSAGE = (
    "❌ Username does not match.\n\n"
    "Please enter your panel username exactly as registered.\n\n"
    "⚠️ Attempts remaining: {remaining}"
)
USERNAME_EXHAUSTED_MESSAGE = (
    "❌ Verification failed. Maximum attempts ({max_attempts}) reached.\n\n"
    "The username you provided does not match our records for Order #{order_id}.\n\n"
    "Please contact support if you believe this is an error."
)

# Email verification dialog
EMAIL_RETRY_MESSAGE = (
    "❌ Email does not match order data.\n\n"
    "⚠️ Attempts remaining: {remaining}"
)
EMAIL_EXHAUSTED_MESSAGE = (
    "❌ Verification failed. Maximum attempts ({max_attempts}) reached for Order #{order_id}.\n\n"
    "Please contact support if you believe this is an error."
)

# Registration dialog
REGISTRATION_PROMPT_MESSAGE = (
    "📝 *Registration Required*\n\n"
    "Your WhatsApp number is not registered yet.\n\n"
    "Please send your *panel username* to register:\n\n"
    'Example: If your username is "john123", just reply:\n'
    "john123\n\n"
    "⏱️ This registration expires in {expiry_minutes} minutes."
)
REGISTRATION_INVALID_MESSAGE = "❌ Please send a valid username."
REGISTRATION_ALREADY_LINKED_MESSAGE = (
    "✅ Your number is already registered with this username. You can now use commands."
)
REGISTRATION_OTHER_NUMBER_MESSAGE = (
    "❌ This username is already linked with another WhatsApp number.\n\n{support_message}"
)
SUPPORT_CONTACT_MESSAGE = "Please contact WhatsApp support team at {support_contact}."
SUPPORT_GENERIC_MESSAGE = "Please contact the support team."
REGISTRATION_NOT_FOUND_MESSAGE = (
    '❌ Username "{username}" not found in the panel.\n\n'
    "Please check and send your correct username.\n\n"
    "⚠️ Attempts remaining: {remaining}"
)
REGISTRATION_EXHAUSTED_MESSAGE = (
    "❌ Username not found. Maximum attempts ({max_attempts}) reached.\n\n"
    "Please contact support if you need help."
)
REGISTRATION_SUCCESS_MESSAGE = (
    "✅ Registration successful!\n\n"
    "Your username *{username}* is now linked with your WhatsApp number.\n\n"
    "You can now use bot commands."
)
REGISTRATION_FAILED_MESSAGE = "❌ Registration failed. Please try again later or contact support."

# Commands that only read order state and never start a cooldown
READ_ONLY_COMMANDS = frozenset({"STATUS"})


def format_wait_display(remaining_seconds: int) -> str:
    """
    Format a wait time for user-facing messages.

    Values of a minute or more are rounded up to whole minutes.

    Args:
        remaining_seconds: Seconds to wait.

    Returns:
        Formatted string like "5 minutes", "1 minute" or "30 seconds".
    """
    if remaining_seconds >= 60:
        minutes = -(-remaining_seconds // 60)
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{remaining_seconds} second" if remaining_seconds == 1 else f"{remaining_seconds} seconds"
