"""
Lifecycle email templates.

``render(template_id, data)`` is a pure function returning subject, HTML and
plain-text bodies; sending is the transport's concern. Templates live in a
Jinja2 ``DictLoader`` with HTML autoescaping, so user-supplied names cannot
inject markup.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict

from jinja2 import DictLoader, Environment, StrictUndefined, TemplateNotFound, select_autoescape

logger = logging.getLogger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{{ title }}</title>
  <style>
    body { font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; margin: 0; padding: 0; background: #0B1220; color: #B9C7D9; }
    .container { max-width: 600px; margin: 0 auto; background: #0F1B2E; border-radius: 12px; overflow: hidden; }
    .header { background: linear-gradient(135deg, #00E5A8 0%, #1FB5FF 100%); padding: 40px 30px; text-align: center; }
    .header h1 { color: white; margin: 0; font-size: 28px; }
    .content { padding: 40px 30px; line-height: 1.6; }
    .info { background: #1FB5FF15; border: 1px solid #1FB5FF30; border-radius: 8px; padding: 20px; margin: 30px 0; }
    .cta-button { display: inline-block; background: linear-gradient(135deg, #FF7A00 0%, #1FB5FF 100%); color: white; text-decoration: none; padding: 15px 30px; border-radius: 8px; font-weight: bold; }
    .footer { padding: 30px; text-align: center; font-size: 14px; color: #7F8CA0; }
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h1>{{ title }}</h1></div>
    <div class="content">
      <p>Hi {{ name }},</p>
      {% block body %}{% endblock %}
      <p style="text-align: center;"><a class="cta-button" href="{{ cta_url }}">{{ cta_label }}</a></p>
    </div>
    <div class="footer">LaunchZone &middot; You are receiving this because you signed up for a LaunchZone plan.</div>
  </div>
</body>
</html>
"""

TEMPLATES: Dict[str, Dict[str, str]] = {
    "welcome": {
        "subject": "Welcome to LaunchZone - Your {{ trial_days }}-day trial has started!",
        "html": """{% extends "_layout.html" %}{% block body %}
      <p>Welcome to LaunchZone! Your free trial has started and you now have access to the complete brand-building toolkit.</p>
      <div class="info">
        <h3>Your {{ trial_days }}-Day Trial Details</h3>
        <p><strong>Plan:</strong> {{ plan_name }}</p>
        <p><strong>Trial ends:</strong> {{ trial_end_date }}</p>
        <p><strong>What happens next:</strong> After your trial you'll be charged {{ plan_price }}/month. Cancel anytime before then.</p>
      </div>
{% endblock %}""",
        "text": """Hi {{ name }},

Welcome to LaunchZone! Your {{ trial_days }}-day trial of {{ plan_name }} has started.
Trial ends: {{ trial_end_date }}
After your trial you'll be charged {{ plan_price }}/month. Cancel anytime before then.

{{ cta_label }}: {{ cta_url }}
""",
    },
    "reminder": {
        "subject": "Your LaunchZone trial ends in {{ days_left }} days",
        "html": """{% extends "_layout.html" %}{% block body %}
      <p>Your LaunchZone trial ends in <strong>{{ days_left }} days</strong> ({{ trial_end_date }}).</p>
      <div class="info">
        <p>Keep your brand kits, scheduled posts and analytics by staying on {{ plan_name }} for {{ plan_price }}/month.</p>
      </div>
{% endblock %}""",
        "text": """Hi {{ name }},

Your LaunchZone trial ends in {{ days_left }} days ({{ trial_end_date }}).
Stay on {{ plan_name }} for {{ plan_price }}/month to keep everything you've built.

{{ cta_label }}: {{ cta_url }}
""",
    },
    "final_reminder": {
        "subject": "Last chance - Your LaunchZone trial ends tomorrow!",
        "html": """{% extends "_layout.html" %}{% block body %}
      <p>Your trial ends <strong>tomorrow</strong> ({{ trial_end_date }}).</p>
      <div class="info">
        <p>Your subscription to {{ plan_name }} starts automatically at {{ plan_price }}/month unless you cancel.</p>
      </div>
{% endblock %}""",
        "text": """Hi {{ name }},

Your LaunchZone trial ends tomorrow ({{ trial_end_date }}).
Your {{ plan_name }} subscription starts automatically at {{ plan_price }}/month unless you cancel.

{{ cta_label }}: {{ cta_url }}
""",
    },
    "conversion": {
        "subject": "Welcome to LaunchZone Premium!",
        "html": """{% extends "_layout.html" %}{% block body %}
      <p>Thanks for upgrading! Your {{ plan_name }} subscription is now active.</p>
      <div class="info">
        <p><strong>Next billing date:</strong> {{ period_end_date }}</p>
      </div>
{% endblock %}""",
        "text": """Hi {{ name }},

Thanks for upgrading! Your {{ plan_name }} subscription is now active.
Next billing date: {{ period_end_date }}

{{ cta_label }}: {{ cta_url }}
""",
    },
    "trial_ending": {
        "subject": "Your LaunchZone trial is ending soon",
        "html": """{% extends "_layout.html" %}{% block body %}
      <p>Your {{ plan_name }} trial ends on <strong>{{ trial_end_date }}</strong>.</p>
      <div class="info">
        <p>Make sure your payment details are up to date to keep your workspace running without interruption.</p>
      </div>
{% endblock %}""",
        "text": """Hi {{ name }},

Your {{ plan_name }} trial ends on {{ trial_end_date }}.
Make sure your payment details are up to date to keep your workspace running.

{{ cta_label }}: {{ cta_url }}
""",
    },
}

CTA = {
    "welcome": "Start Building",
    "reminder": "Review My Plan",
    "final_reminder": "Keep My Account",
    "conversion": "Go to Dashboard",
    "trial_ending": "Update Billing",
}

TITLES = {
    "welcome": "Welcome to LaunchZone!",
    "reminder": "Your trial is almost over",
    "final_reminder": "Last day of your trial",
    "conversion": "You're all set!",
    "trial_ending": "Your trial is ending",
}


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def _build_environments():
    loader_templates = {"_layout.html": _LAYOUT}
    for template_id, parts in TEMPLATES.items():
        loader_templates[f"{template_id}.html"] = parts["html"]
        loader_templates[f"{template_id}.subject"] = parts["subject"]
        loader_templates[f"{template_id}.txt"] = parts["text"]
    loader = DictLoader(loader_templates)
    html_env = Environment(
        loader=loader,
        autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
        undefined=StrictUndefined,
    )
    text_env = Environment(loader=loader, autoescape=False, undefined=StrictUndefined)
    return html_env, text_env


_html_env, _text_env = _build_environments()


def render(template_id: str, data: Dict[str, Any]) -> RenderedEmail:
    """Render one lifecycle email. Unknown template ids raise ``KeyError``."""
    if template_id not in TEMPLATES:
        raise KeyError(f"Unknown email template: {template_id}")

    context = {
        "title": TITLES[template_id],
        "cta_label": CTA[template_id],
        **data,
    }
    try:
        subject = _text_env.get_template(f"{template_id}.subject").render(**context).strip()
        html = _html_env.get_template(f"{template_id}.html").render(**context)
        text = _text_env.get_template(f"{template_id}.txt").render(**context)
    except TemplateNotFound as e:
        logger.error(f"Email template part missing for {template_id}: {e}")
        raise KeyError(f"Unknown email template: {template_id}") from e
    return RenderedEmail(subject=subject, html=html, text=text)
