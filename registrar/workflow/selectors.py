"""
Selectors and text markers for the signup flow.
"""

LOGIN_PATH = "/user/login"
CART_PATH = "/cart"

USERNAME_FIELD = '#edit-name, input[name="name"], input[type="email"]'
PASSWORD_FIELD = '#edit-pass, input[name="pass"], input[type="password"]'
LOGIN_SUBMIT = '#edit-submit, button[type="submit"], input[type="submit"]'
LOGOUT_AFFORDANCE = 'a[href*="/user/logout"], a:has-text("Log out"), a:has-text("Sign out")'
LOGIN_ERROR = (
    '.messages--error, .message--error, .alert-danger, [role="alert"], '
    '[class*="error"], [class*="invalid"]'
)

PARTICIPANT_SELECT = 'select#edit-field-participant, select[name*="participant"], select[name*="child"]'
NEXT_BUTTON = (
    '#edit-actions-next, #edit-submit, button:has-text("Next"), button:has-text("Continue"), '
    'input[type="submit"][value*="Next"], input[type="submit"][value*="Continue"], '
    'button:has-text("Add to cart")'
)

# Recognized add-on categories, keyed by PlanExtras field.
ADDON_SELECTS = {
    "rental": 'select[name*="rental" i], select[id*="rental" i]',
    "color_group": 'select[name*="color" i], select[id*="color" i]',
    "volunteer": 'select[name*="volunteer" i], select[id*="volunteer" i]',
}
REQUIRED_SELECT = 'select[required], select.required, select[aria-required="true"]'
DONATION_INPUT = (
    'input[name*="donat" i], input[name*="tip" i], input[name*="contribution" i], '
    'input[id*="donat" i]'
)

CHECKOUT_BUTTON = '#edit-checkout, button:has-text("Checkout"), input[type="submit"][value*="Checkout"]'
CARD_FORM = (
    'input[autocomplete="cc-number"], input[name*="cardnumber" i], input[name*="card_number" i], '
    'iframe[src*="card"]'
)
SAVED_PAYMENT = 'input[type="radio"][name*="payment"][value*="saved"], input[type="radio"][name*="payment_method"]'
CVV_FIELD = (
    'input[name*="cvv" i], input[id*="cvv" i], input[name*="cvc" i], '
    'input[name*="security" i], input[placeholder*="CVV" i]'
)
CONTINUE_TO_REVIEW = 'button:has-text("Continue to Review"), #edit-actions-next'
PAY_BUTTON = (
    'button:has-text("Pay and complete purchase"), button:has-text("Complete purchase"), '
    'button:has-text("Place order")'
)

# Interactive CAPTCHA widgets only; a passive v3 badge does not block.
CAPTCHA_WIDGET = (
    'iframe[src*="recaptcha/api2/bframe"], iframe[src*="recaptcha/api2/anchor"], '
    'iframe[src*="hcaptcha"], iframe[src*="turnstile"], .g-recaptcha, .h-captcha, .cf-turnstile'
)
CAPTCHA_TEXT_MARKERS = (
    "i'm not a robot",
    "verify you are human",
    "human verification",
    "complete the security check",
)
