# /cartresq/config/strings.py

# Customer-facing email copy lives here so the renderer only deals with layout.

BRAND_NAME = "CartResQ"
COPYRIGHT_LINE = "© 2024 CartResQ. All rights reserved."

REMINDER_SUBJECTS = {
    "first": "🛒 Complete Your Purchase - Your Cart is Waiting!",
    "second": "⏰ Don't Miss Out - Your Cart is Still Available!",
    "final": "🔥 Last Chance - Complete Your Order Now!",
    "manual": "🛒 Complete Your Purchase - Your Cart is Waiting!",
}

REMINDER_MESSAGES = {
    "first": "We noticed you left some items in your cart. Don't miss out on these great products!",
    "second": "Your cart is still waiting for you! Complete your purchase before items sell out.",
    "final": "This is your final reminder! Complete your order now before your cart expires.",
    "manual": "We noticed you left some items in your cart. Don't miss out on these great products!",
}

REMINDER_HEADLINE = "Complete Your Purchase! 🛒"
REMINDER_SUBLINE = "Your cart is waiting for you to complete your purchase."
CART_ITEMS_HEADING = "Your Cart Items:"
EMPTY_CART_MESSAGE = "No items found in your cart."
CHECKOUT_BUTTON_LABEL = "Complete Your Order"
CART_SAVED_NOTICE = "Your cart will be saved for a limited time."
UNSUBSCRIBE_PROMPT = "Don't want to receive these reminders?"

DISCOUNT_SUBJECT = "Special Offer Just For You! 🎁"
DISCOUNT_HEADLINE = "Special Offer Just For You! 🎁"
DISCOUNT_INTRO = (
    "We noticed you left some amazing items in your cart, and we want to make sure you don't miss out!"
)
DISCOUNT_LEAD_IN = "As a special gesture, we're offering you an exclusive discount:"
DISCOUNT_URGENCY = "Limited time offer - Don't miss out!"
DISCOUNT_BUTTON_LABEL = "Complete Your Purchase Now"
DISCOUNT_EXCLUSIVE_NOTICE = "This offer is exclusively for you and expires soon!"
DISCOUNT_UNSUBSCRIBE_PROMPT = "Don't want to receive these offers?"

CAMPAIGN_DEFAULT_SUBJECT = "Complete Your Purchase"

# Bracketed call-to-action phrases that campaign authors type into templates.
# Each one is turned into a link to the recovery URL.
CTA_PHRASES = (
    "Checkout Now",
    "Complete My Purchase",
    "Complete Purchase",
    "Complete Order",
    "Shop Now",
    "Buy Now",
    "View Cart",
    "Continue Shopping",
    "Return to My Cart",
    "Return to Cart",
    "Go to Cart",
    "View My Cart",
    "Finish Order",
    "Complete My Order",
)

# Subject phrases that trip spam filters, with the softer replacement.
SPAM_SUBJECT_REWRITES = (
    ("last chance", "Complete Your Order"),
    ("recover", "Complete"),
)
