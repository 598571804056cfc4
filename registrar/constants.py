"""
Constants shared across the engine.
"""

import re

# Plan statuses the execution entry point accepts.
RUNNABLE_STATUSES = ("scheduled", "action_required", "executing")

FUZZY_ACCEPT_THRESHOLD = 0.8

# Challenge tokens: no 0/O, 1/I/L.
CHALLENGE_TOKEN_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
CHALLENGE_TOKEN_LENGTH = 8
CHALLENGE_TTL_SECONDS = 300

SESSION_TTL_SECONDS = 24 * 60 * 60

# Values in plan extras that mean "let the engine decide".
AUTO_VALUES = ("", "__AUTO__")

CVV_PATTERN = re.compile(r"^\d{3,4}$")
PRICE_PATTERN = re.compile(r"[$€£]\s*\d|\b\d+(\.\d{2})?\s*(usd|eur|gbp)\b", re.IGNORECASE)
PLACEHOLDER_OPTION_PATTERN = re.compile(r"^[\s-]*(?:none|select|choose)\b|^[\s-]*$", re.IGNORECASE)

SUCCESS_URL_PATTERN = re.compile(r"/checkout/.+/complete")
SUCCESS_TEXT_PATTERN = re.compile(
    r"(thank you|registration complete|successfully registered|order number)", re.IGNORECASE
)
AUTHENTICATED_URL_PATTERN = re.compile(r"/user/(dashboard|\d+)")
REGISTRATION_START_PATTERN = re.compile(r"/registration/\d+/start")
