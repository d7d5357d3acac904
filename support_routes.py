# Support and AI Content API Routes
# WhatsApp support chat over Z-API, content translation and brandbook extraction

import os
import io
import re
import json
import hmac
import base64
import logging
from typing import Dict, Any, Optional, List, Tuple

import requests
from flask import Blueprint, request, jsonify, g
from pypdf import PdfReader

import ai_gateway
import supabase_client as db
from request_auth import require_user, require_admin

logger = logging.getLogger(__name__)

support_bp = Blueprint('support', __name__)

# Z-API Configuration
ZAPI_INSTANCE_ID = os.environ.get('ZAPI_INSTANCE_ID')
ZAPI_TOKEN = os.environ.get('ZAPI_TOKEN')
ZAPI_CLIENT_TOKEN = os.environ.get('ZAPI_CLIENT_TOKEN', '')
ZAPI_WEBHOOK_SECRET = os.environ.get('ZAPI_WEBHOOK_SECRET')
SUPPORT_WHATSAPP_NUMBER = os.environ.get('SUPPORT_WHATSAPP_NUMBER')

ZAPI_BASE_URL = 'https://api.z-api.io'
TIMEOUT = (5, 30)

CONTROL_CHARS_RE = re.compile(r'[\x00-\x1f\x7f]')
REPLY_ADDRESS_RE = re.compile(r'@([\w.-]+@[\w.-]+\.\w+)')
REPLY_PREFIX_RE = re.compile(r'@[\w.-]+@[\w.-]+\.\w+\s*')

STATUS_MAP = {
    'DELIVERED': 'delivered',
    'DELIVERY_ACK': 'delivered',
    'READ': 'read',
    'VIEWED': 'read',
    'FAILED': 'failed',
}

LANGUAGE_NAMES = {
    'en': 'English',
    'es': 'Spanish',
    'zh': 'Chinese',
    'pt-BR': 'Brazilian Portuguese',
}

HEX_COLOR_RE = re.compile(r'^#?([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$')
HEX_IN_TEXT_RE = re.compile(r'#([A-Fa-f0-9]{6})\b')

COLOR_DEFAULTS = {
    'primary': '#0891b2',
    'secondary': '#06b6d4',
    'accent': '#0ea5e9',
    'background': '#ffffff',
    'foreground': '#0f172a',
    'muted': '#94a3b8',
    'destructive': '#ef4444',
    'success': '#22c55e',
    'card': '#ffffff',
    'border': '#e2e8f0',
}
STYLE_DEFAULTS = {'border_radius': 'md', 'visual_tone': 'modern', 'contrast_level': 'medium'}

# Order in which colours found in the PDF text fill the palette
TEXT_PALETTE_ORDER = ('primary', 'secondary', 'accent')

BRANDBOOK_TEXT_LIMIT = 15000
RATE_LIMIT_MESSAGE = 'Limite de requisições excedido. Tente novamente em alguns minutos.'

BRANDBOOK_SYSTEM_PROMPT = """Você é um especialista sênior em design e identidade visual corporativa. Sua tarefa é analisar brandbooks/manuais de identidade visual com precisão máxima.

IMPORTANTE: Responda APENAS com um JSON válido, sem markdown e sem explicações, neste formato:
{
  "brand_name": "Nome da marca",
  "colors": {
    "primary": "#XXXXXX", "secondary": "#XXXXXX", "accent": "#XXXXXX",
    "background": "#XXXXXX", "foreground": "#XXXXXX", "muted": "#XXXXXX",
    "destructive": "#XXXXXX", "success": "#XXXXXX", "card": "#XXXXXX", "border": "#XXXXXX"
  },
  "fonts": {"primary": "Fonte de títulos", "secondary": "Fonte de texto corrido"},
  "style": {
    "border_radius": "none" | "sm" | "md" | "lg" | "full",
    "visual_tone": "modern" | "classic" | "playful" | "elegant" | "minimal" | "bold",
    "contrast_level": "high" | "medium" | "low"
  },
  "logo_description": "Breve descrição do logo",
  "design_recommendations": ["Recomendação 1", "Recomendação 2", "Recomendação 3"],
  "confidence": "high" | "medium" | "low"
}

Extraia as cores EXATAS do documento em hexadecimal (#XXXXXX). Se uma cor não existir, derive-a das cores encontradas mantendo a harmonia visual. Para fontes personalizadas, sugira Google Fonts similares. Forneça de 3 a 5 recomendações práticas."""

BRANDBOOK_USER_PROMPT = ('Analise este brandbook/manual de identidade visual com extrema atenção aos detalhes. '
                         'Extraia TODAS as cores da paleta principal, identifique as fontes tipográficas e '
                         'observe o estilo visual. Responda APENAS com o JSON.')


# ============================================================================
# WHATSAPP SUPPORT
# ============================================================================

def zapi_configured() -> bool:
    return bool(ZAPI_INSTANCE_ID and ZAPI_TOKEN and SUPPORT_WHATSAPP_NUMBER)


def format_support_message(name: str, email: str, message: str) -> str:
    return f"[Care BI - Suporte]\nUsuário: {name}\nEmail: {email}\n\nMensagem:\n{message}"


def send_whatsapp_text(phone: str, message: str) -> Dict[str, Any]:
    response = requests.post(
        f"{ZAPI_BASE_URL}/instances/{ZAPI_INSTANCE_ID}/token/{ZAPI_TOKEN}/send-text",
        headers={'Content-Type': 'application/json', 'Client-Token': ZAPI_CLIENT_TOKEN},
        json={'phone': phone, 'message': message},
        timeout=TIMEOUT
    )
    response.raise_for_status()
    return response.json()


@support_bp.route('/api/support/messages', methods=['POST', 'OPTIONS'])
@require_user
def send_support_message():
    try:
        if not zapi_configured():
            logger.error("Z-API not configured")
            return jsonify({'error': 'Z-API not configured'}), 500

        body = request.get_json(silent=True) or {}
        message = (body.get('message') or '').strip()
        if not message:
            return jsonify({'error': 'Message is required'}), 400

        caller = g.caller
        profile = caller['profile']
        formatted = format_support_message(profile.get('full_name') or caller['email'],
                                           profile.get('email') or caller['email'], message)

        try:
            result = send_whatsapp_text(SUPPORT_WHATSAPP_NUMBER, formatted)
        except requests.exceptions.RequestException as e:
            logger.error(f"Z-API send failed for user {caller['user_id']}: {str(e)}")
            return jsonify({'error': 'Failed to send message via Z-API'}), 500

        saved = None
        try:
            saved = db.insert_rows('support_messages', {
                'user_id': caller['user_id'],
                'company_id': caller['company_id'],
                'message': message,
                'sender_type': 'user',
                'whatsapp_message_id': result.get('messageId'),
                'status': 'sent',
            })[0]
        except Exception as e:
            logger.error(f"Failed to save support message: {str(e)}")

        return jsonify({'success': True, 'messageId': result.get('messageId'), 'savedMessage': saved})

    except Exception as e:
        logger.error(f"Error sending support message: {str(e)}")
        return jsonify({'error': str(e)}), 500


def parse_webhook_body(raw: str) -> Dict[str, Any]:
    """Z-API payloads occasionally carry raw control characters inside strings."""
    return json.loads(CONTROL_CHARS_RE.sub('', raw))


def store_support_reply(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Save a reply typed on the support phone as '@user@example.com text'."""
    text = (payload.get('text') or {}).get('message')
    if not text:
        return None

    match = REPLY_ADDRESS_RE.search(text)
    if not match:
        if payload.get('fromMe'):
            logger.info("Support message without a recipient address, ignored")
        return None

    email = match.group(1)
    profile = db.select_one('profiles', {'email': f'eq.{email}'}, select='id,company_id')
    if not profile:
        logger.warning(f"Support reply addressed to unknown user {email}")
        return None

    return db.insert_rows('support_messages', {
        'user_id': profile['id'],
        'company_id': profile.get('company_id'),
        'message': REPLY_PREFIX_RE.sub('', text, count=1).strip(),
        'sender_type': 'support',
        'whatsapp_message_id': payload.get('messageId'),
        'status': 'delivered',
    })[0]


@support_bp.route('/webhooks/zapi', methods=['POST'])
def zapi_webhook():
    if ZAPI_WEBHOOK_SECRET:
        supplied = request.headers.get('X-Webhook-Secret', '')
        if not hmac.compare_digest(supplied, ZAPI_WEBHOOK_SECRET):
            logger.warning("Z-API webhook with invalid secret")
            return jsonify({'error': 'Unauthorized'}), 403

    try:
        payload = parse_webhook_body(request.get_data(as_text=True))
    except ValueError as e:
        logger.error(f"Invalid Z-API payload: {str(e)}")
        return jsonify({'error': 'Invalid JSON payload', 'details': str(e)}), 400

    try:
        if payload.get('isGroup'):
            return jsonify({'success': True, 'message': 'Group message ignored'})

        event_type = payload.get('type')
        if event_type == 'ReceivedCallback':
            saved = store_support_reply(payload)
            if saved:
                logger.info(f"Support reply stored for user {saved['user_id']}")

        elif event_type == 'MessageStatusCallback' and payload.get('messageId'):
            status = STATUS_MAP.get(payload.get('status'), 'sent')
            db.update_rows('support_messages', {'whatsapp_message_id': f"eq.{payload['messageId']}"},
                           {'status': status})

        return jsonify({'success': True})

    except Exception as e:
        logger.error(f"Error in Z-API webhook: {str(e)}")
        return jsonify({'error': str(e)}), 500


# ============================================================================
# TRANSLATION
# ============================================================================

@support_bp.route('/api/ai/translate', methods=['POST', 'OPTIONS'])
@require_user
def translate_content():
    try:
        body = request.get_json(silent=True) or {}
        content = body.get('content')
        target_language = body.get('targetLanguage')
        if not content or not target_language:
            return jsonify({'error': 'Content and target language are required'}), 400

        language_name = LANGUAGE_NAMES.get(target_language, target_language)
        system_prompt = (f"You are a professional legal document translator. Translate the following content "
                         f"to {language_name}. Maintain the exact same JSON structure. Keep all formatting "
                         f"markers like ** for bold text intact. Return ONLY the translated JSON, no "
                         f"explanations or additional text.")

        answer = ai_gateway.chat_completion([
            {'role': 'system', 'content': system_prompt},
            {'role': 'user', 'content': json.dumps(content, ensure_ascii=False)},
        ], temperature=0.3)

        try:
            translated = ai_gateway.parse_json_answer(answer)
        except ValueError:
            logger.error(f"Unparseable translation: {answer[:200]}")
            return jsonify({'error': 'Failed to parse translation'}), 500

        return jsonify({'translatedContent': translated})

    except ai_gateway.AIRateLimitError:
        return jsonify({'error': RATE_LIMIT_MESSAGE}), 429
    except Exception as e:
        logger.error(f"Translation error: {str(e)}")
        return jsonify({'error': str(e)}), 500


# ============================================================================
# BRANDBOOK EXTRACTION
# ============================================================================

def split_data_url(pdf_base64: str) -> Tuple[str, bytes]:
    """Return (data_url, raw_pdf_bytes) for a bare or data:-prefixed base64 PDF."""
    if pdf_base64.startswith('data:'):
        data_url = pdf_base64
        encoded = pdf_base64.split(',', 1)[-1]
    else:
        data_url = f'data:application/pdf;base64,{pdf_base64}'
        encoded = pdf_base64
    return data_url, base64.b64decode(encoded)


def extract_pdf_text(pdf_bytes: bytes) -> str:
    """Text layer of the PDF, '' when there is none or the file cannot be read."""
    try:
        reader = PdfReader(io.BytesIO(pdf_bytes))
        parts = []
        for page in reader.pages:
            try:
                parts.append(page.extract_text() or '')
            except Exception as e:
                logger.warning(f"Failed to extract text from page: {str(e)}")
        text = '\n\n'.join(parts).strip()
        logger.info(f"Extracted {len(text)} characters from {len(reader.pages)} pages")
        return text
    except Exception as e:
        logger.warning(f"Failed to read brandbook PDF: {str(e)}")
        return ''


def validate_hex_color(value) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    if not HEX_COLOR_RE.match(value):
        return None
    return value if value.startswith('#') else f'#{value}'


def colors_from_text(text: str) -> List[str]:
    seen = []
    for match in HEX_IN_TEXT_RE.finditer(text or ''):
        color = f'#{match.group(1).lower()}'
        if color not in seen:
            seen.append(color)
    return seen


def normalize_brand_data(brand: Dict[str, Any]) -> Dict[str, Any]:
    colors = brand.get('colors') or brand
    fonts = brand.get('fonts') or {}
    style = brand.get('style') or {}

    data = {'brand_name': brand.get('brand_name') or None}
    for name, default in COLOR_DEFAULTS.items():
        data[f'{name}_color'] = (validate_hex_color(colors.get(name) or colors.get(f'{name}_color'))
                                 or default)
    data.update({
        'fonts': {'primary': fonts.get('primary') or None, 'secondary': fonts.get('secondary') or None},
        'style': {key: style.get(key) or default for key, default in STYLE_DEFAULTS.items()},
        'logo_description': brand.get('logo_description') or None,
        'design_recommendations': brand.get('design_recommendations') or [],
        'confidence': brand.get('confidence') or 'medium',
    })
    return data


def brand_data_from_text(text: str) -> Optional[Dict[str, Any]]:
    """Fallback palette built from hex codes printed in the brandbook."""
    found = colors_from_text(text)
    if not found:
        return None
    colors = dict(zip(TEXT_PALETTE_ORDER, found))
    return normalize_brand_data({'colors': colors, 'confidence': 'low'})


@support_bp.route('/api/ai/brandbook', methods=['POST', 'OPTIONS'])
@require_admin
def extract_brandbook():
    try:
        body = request.get_json(silent=True) or {}
        pdf_base64 = body.get('pdfBase64')
        if not pdf_base64:
            return jsonify({'success': False, 'error': 'PDF base64 é obrigatório'}), 400

        try:
            data_url, pdf_bytes = split_data_url(pdf_base64)
        except ValueError:
            return jsonify({'success': False, 'error': 'PDF base64 inválido'}), 400

        pdf_text = extract_pdf_text(pdf_bytes)
        user_content = [{'type': 'text', 'text': BRANDBOOK_USER_PROMPT}]
        if pdf_text:
            user_content.append({'type': 'text',
                                 'text': f'Texto extraído do PDF:\n{pdf_text[:BRANDBOOK_TEXT_LIMIT]}'})
        user_content.append({'type': 'image_url', 'image_url': {'url': data_url}})

        answer = ai_gateway.chat_completion([
            {'role': 'system', 'content': BRANDBOOK_SYSTEM_PROMPT},
            {'role': 'user', 'content': user_content},
        ], max_tokens=3000)

        try:
            data = normalize_brand_data(ai_gateway.parse_json_answer(answer))
        except (ValueError, AttributeError):
            logger.error(f"Unparseable brandbook answer: {answer[:200]}")
            data = brand_data_from_text(pdf_text)
            if not data:
                return jsonify({'success': False, 'error': 'Não foi possível extrair dados do brandbook'}), 500

        logger.info(f"Brandbook extracted for {g.caller['user_id']}: {data['brand_name']} "
                    f"(confidence {data['confidence']})")
        return jsonify({'success': True, 'data': data})

    except ai_gateway.AIRateLimitError:
        return jsonify({'success': False, 'error': RATE_LIMIT_MESSAGE}), 429
    except Exception as e:
        logger.error(f"Error extracting brandbook: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500
