"""
Outbound email over SMTP (STARTTLS), plus the branded HTML shell shared by
every transactional message the service sends.
"""

import io
import os
import logging
import smtplib
from html import escape
from email.mime.text import MIMEText
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.utils import formataddr
from typing import Dict, Optional, List

from PIL import Image

logger = logging.getLogger(__name__)

# SMTP Configuration
SMTP_HOST = os.environ.get('SMTP_HOST')
SMTP_PORT = int(os.environ.get('SMTP_PORT', '587'))
# Clean SMTP credentials to handle non-ASCII characters like non-breaking spaces
SMTP_USER = (os.environ.get('SMTP_USER') or '').strip().replace('\xa0', ' ')
SMTP_PASS = (os.environ.get('SMTP_PASS') or '').strip().replace('\xa0', ' ')
SMTP_FROM = os.environ.get('SMTP_FROM', 'noreply@carebi.com.br')
SMTP_FROM_NAME = os.environ.get('SMTP_FROM_NAME', 'Care BI')

APP_URL = os.environ.get('APP_URL', 'https://app.carebi.com.br')

DEFAULT_PRIMARY_COLOR = '#0891b2'
DEFAULT_COMPANY_NAME = 'Care BI'
REPORT_IMAGE_CID = 'report-image'
REPORT_IMAGE_MAX_WIDTH = 760


class EmailNotConfigured(Exception):
    pass


def smtp_configured() -> bool:
    return bool(SMTP_HOST and SMTP_USER and SMTP_PASS)


def send_email(to: str, subject: str, html: str, text: Optional[str] = None, to_name: Optional[str] = None,
               inline_images: Optional[Dict[str, bytes]] = None) -> None:
    """
    Send one message. inline_images maps Content-ID to PNG bytes; reference
    them from the HTML as cid:<id>. Raises on SMTP failure.
    """
    if not smtp_configured():
        raise EmailNotConfigured('SMTP not configured')

    body = MIMEMultipart('alternative')
    if text:
        body.attach(MIMEText(text, 'plain', 'utf-8'))
    body.attach(MIMEText(html, 'html', 'utf-8'))

    if inline_images:
        msg = MIMEMultipart('related')
        msg.attach(body)
        for content_id, image_bytes in inline_images.items():
            image = MIMEImage(image_bytes, 'png')
            image.add_header('Content-ID', f'<{content_id}>')
            image.add_header('Content-Disposition', 'inline', filename=f'{content_id}.png')
            msg.attach(image)
    else:
        msg = body

    msg['From'] = formataddr((SMTP_FROM_NAME, SMTP_FROM))
    msg['To'] = formataddr((to_name, to)) if to_name else to
    msg['Subject'] = subject

    with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=20) as server:
        server.ehlo()
        server.starttls()
        server.ehlo()
        server.login(SMTP_USER, SMTP_PASS)
        server.sendmail(SMTP_FROM, [to], msg.as_string())

    logger.info(f"Email sent to {to}: {subject}")


def prepare_report_image(png_bytes: bytes, max_width: int = REPORT_IMAGE_MAX_WIDTH) -> bytes:
    """Downscale a report export so it fits an email column."""
    with Image.open(io.BytesIO(png_bytes)) as image:
        if image.width <= max_width:
            return png_bytes
        height = round(image.height * max_width / image.width)
        resized = image.resize((max_width, height), Image.LANCZOS)
        out = io.BytesIO()
        resized.save(out, format='PNG', optimize=True)
        return out.getvalue()


def render_layout(content_html: str, cta_url: Optional[str] = None, cta_text: Optional[str] = None,
                  primary_color: str = DEFAULT_PRIMARY_COLOR, company_name: str = DEFAULT_COMPANY_NAME,
                  width: int = 600) -> str:
    cta = ''
    if cta_url and cta_text:
        cta = f"""
            <table cellpadding="0" cellspacing="0" style="margin: 30px auto 0;">
              <tr>
                <td style="background-color: {primary_color}; border-radius: 8px;">
                  <a href="{escape(cta_url)}" style="display: inline-block; padding: 14px 28px; color: #ffffff; text-decoration: none; font-weight: 600;">{escape(cta_text)}</a>
                </td>
              </tr>
            </table>"""

    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width, initial-scale=1.0"></head>
<body style="margin: 0; padding: 0; font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; background-color: #f4f4f5;">
  <table width="100%" cellpadding="0" cellspacing="0" style="background-color: #f4f4f5; padding: 40px 20px;">
    <tr>
      <td align="center">
        <table width="{width}" cellpadding="0" cellspacing="0" style="background-color: #ffffff; border-radius: 12px; overflow: hidden;">
          <tr>
            <td style="background-color: {primary_color}; padding: 30px 40px; text-align: center;">
              <h1 style="color: #ffffff; margin: 0; font-size: 24px; font-weight: 600;">{escape(company_name)}</h1>
            </td>
          </tr>
          <tr>
            <td style="padding: 40px; color: #374151; font-size: 16px; line-height: 1.6;">
              {content_html}{cta}
            </td>
          </tr>
          <tr>
            <td style="background-color: #f9fafb; padding: 20px 40px; text-align: center; color: #9ca3af; font-size: 12px;">
              Este é um email automático enviado por {escape(company_name)}.
            </td>
          </tr>
        </table>
      </td>
    </tr>
  </table>
</body>
</html>"""


def render_report_email(recipient_name: Optional[str], dashboard_name: str, dashboard_link: str,
                        direct_link: str, with_image: bool, primary_color: str = DEFAULT_PRIMARY_COLOR,
                        company_name: str = DEFAULT_COMPANY_NAME) -> str:
    greeting = f"Olá <strong>{escape(recipient_name)}</strong>," if recipient_name else "Olá,"
    name = escape(dashboard_name)

    if with_image:
        content = f"""
              <p>{greeting}</p>
              <p>Segue a captura do seu relatório <strong>"{name}"</strong>:</p>
              <img src="cid:{REPORT_IMAGE_CID}" alt="{name}" style="max-width: 100%; border: 1px solid #e5e7eb; border-radius: 8px;">
              <p style="margin-top: 30px;">Para interagir com os dados, acesse o dashboard completo:</p>
              <p><a href="{escape(direct_link)}" style="color: {primary_color};">Abrir no Power BI</a></p>"""
    else:
        content = f"""
              <p>{greeting}</p>
              <p>Seu relatório <strong>"{name}"</strong> está pronto para visualização.</p>
              <p>Clique no botão abaixo para acessar o dashboard atualizado.</p>
              <p style="font-size: 14px; color: #6b7280;">Link direto: <a href="{escape(direct_link)}" style="color: {primary_color};">{escape(direct_link)}</a></p>"""

    return render_layout(
        content,
        cta_url=dashboard_link,
        cta_text='📊 Ver Dashboard',
        primary_color=primary_color,
        company_name=company_name,
        width=800 if with_image else 600,
    )


def send_report_email(recipients: List[Dict[str, str]], subject: str, dashboard_name: str, dashboard_link: str,
                      direct_link: str, image_png: Optional[bytes] = None,
                      primary_color: str = DEFAULT_PRIMARY_COLOR,
                      company_name: str = DEFAULT_COMPANY_NAME) -> int:
    """Send the report to each recipient; return how many messages went out."""
    inline_images = {REPORT_IMAGE_CID: prepare_report_image(image_png)} if image_png else None
    sent = 0

    for recipient in recipients:
        html = render_report_email(recipient.get('name'), dashboard_name, dashboard_link, direct_link,
                                   with_image=bool(image_png), primary_color=primary_color,
                                   company_name=company_name)
        try:
            send_email(recipient['email'], subject, html, to_name=recipient.get('name'),
                       inline_images=inline_images)
            sent += 1
        except Exception as e:
            logger.error(f"Failed to send report email to {recipient.get('email')}: {str(e)}")

    return sent
