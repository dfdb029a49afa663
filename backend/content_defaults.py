import os

APP_NAME = os.environ.get("APP_NAME", "DVision Academy").strip() or "DVision Academy"
SUPPORT_EMAIL = os.environ.get("SUPPORT_CONTACT_EMAIL", "support@dvisionacademy.com").strip()
SUPPORT_PHONE = os.environ.get("SUPPORT_CONTACT_PHONE", "+91 98765 43210").strip()

DEFAULT_SLUG = "default"
DEFAULT_VERSION = "1.0.0"

ABOUT_CONTENT = f"""
About {APP_NAME}

{APP_NAME} is an online learning platform for students of classes 6 to 12, with
courses aligned to the CBSE and RBSE curricula.

Our Mission

Quality education should be reachable for every student, wherever they live.
We help students build knowledge and confidence for their exams and beyond.

What We Offer

1. Live interactive classes with experienced teachers, plus recordings for revision
2. Structured course material, practice tests and assignments for each board
3. Preparation tracks for competitive and board examinations
4. Regular performance tracking and doubt clearing

Our Commitment

We keep our curriculum current, our pricing fair and our support team close at
hand. Start your path to academic excellence with {APP_NAME} today.
""".strip()

PRIVACY_CONTENT = f"""
Privacy Policy

{APP_NAME} collects the information needed to run your account: your name, phone
number, email address, class and board, and records of your subscriptions and
payments.

How We Use Your Information

- To verify your identity through one-time passwords sent to your phone
- To activate and manage the subscriptions you purchase
- To send notifications about classes, subscriptions and account activity

Payments are processed by our payment partner. We never store card or bank
details on our servers.

We do not sell your personal information. Data is shared only with service
providers that help us operate the platform, or when required by law.

For questions about this policy, write to {SUPPORT_EMAIL}.
""".strip()

TERMS_CONTENT = f"""
Terms & Conditions

By creating an account on {APP_NAME} you agree to these terms.

1. Accounts are personal. Do not share your login or one-time passwords.
2. Subscriptions grant access to the plan's classes for the purchased duration.
   Access ends automatically when the subscription period expires.
3. You may hold only one active subscription per class at a time.
4. Fees are charged in Indian Rupees through our payment partner. Completed
   payments are non-refundable except where required by law.
5. Course material is for personal study only and may not be redistributed.
6. We may suspend accounts that misuse the platform.

Contact {SUPPORT_EMAIL} with any questions about these terms.
""".strip()

DOCUMENT_DEFAULTS = {
    "about": {"title": "About Us", "content": ABOUT_CONTENT},
    "privacy": {"title": "Privacy Policy", "content": PRIVACY_CONTENT},
    "terms": {"title": "Terms & Conditions", "content": TERMS_CONTENT},
}

CONTACT_DEFAULT = {
    "title": f"Need help? Contact {APP_NAME} Support",
    "subtitle": "Our team is available to help you with classes, subscriptions, technical issues and more.",
    "email": SUPPORT_EMAIL,
    "phone": SUPPORT_PHONE,
    "whatsapp": SUPPORT_PHONE,
    "address": f"{APP_NAME}, Jaipur, Rajasthan, India",
    "support_hours": "Mon - Sat, 10:00 AM to 7:00 PM",
    "additional_notes": "For urgent issues related to live classes, please use WhatsApp or call directly.",
}
