import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.core.config import EmailPolicy

logger = logging.getLogger(__name__)

TEMPLATE_PATH = Path(__file__).parent.parent / "templates" / "emails"
env = Environment(loader=FileSystemLoader(TEMPLATE_PATH), autoescape=select_autoescape(["html", "xml", "html.j2"]))


def _build_message(policy: EmailPolicy, to_email: str, subject: str, text_body: str, html_body: str | None = None) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = policy.from_email
    msg["To"] = to_email
    msg.set_content(text_body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    return msg


async def send_email(
    policy: EmailPolicy, to_email: str, subject: str, text_body: str, html_body: str | None = None
) -> bool:
    if not policy.enabled:
        return False
    msg = _build_message(policy, to_email, subject, text_body, html_body)
    try:
        with smtplib.SMTP(policy.smtp_host, policy.smtp_port, timeout=10) as smtp:
            if policy.smtp_use_tls:
                smtp.starttls()
            if policy.smtp_username and policy.smtp_password:
                smtp.login(policy.smtp_username, policy.smtp_password)
            smtp.send_message(msg)
        return True
    except Exception as exc:
        logger.warning("Email send failed: %s", exc)
        return False


def render_template(template_name: str, context: dict) -> tuple[str, str]:
    base_text = env.get_template("base.txt.j2")
    base_html = env.get_template("base.html.j2")
    body_text = env.get_template(template_name).render(**context)
    body_html = env.get_template(template_name.replace(".txt.j2", ".html.j2")).render(**context)
    return base_text.render(body=body_text), base_html.render(body=body_html)


async def send_contact_support_notification(
    policy: EmailPolicy, to_email: str, *, name: str, from_email: str, message: str
) -> bool:
    subject = f"New contact message from {name}"
    text_body, html_body = render_template(
        "contact_support_notification.txt.j2", {"name": name, "email": from_email, "message": message}
    )
    return await send_email(policy, to_email, subject, text_body, html_body)


async def send_contact_acknowledgment(policy: EmailPolicy, to_email: str, *, name: str) -> bool:
    subject = f"Thank you for contacting us, {name}"
    text_body, html_body = render_template("contact_acknowledgment.txt.j2", {"name": name})
    return await send_email(policy, to_email, subject, text_body, html_body)


async def send_contact_status_update(policy: EmailPolicy, to_email: str, *, name: str, status: str) -> bool:
    subject = f"Your contact message status was updated to {status}"
    text_body, html_body = render_template("contact_status_update.txt.j2", {"name": name, "status": status})
    return await send_email(policy, to_email, subject, text_body, html_body)


async def send_contact_response(policy: EmailPolicy, to_email: str, *, name: str, response: str) -> bool:
    subject = "Response to your contact message"
    text_body, html_body = render_template("contact_response.txt.j2", {"name": name, "response": response})
    return await send_email(policy, to_email, subject, text_body, html_body)
