"""
Message formatting and escaping utilities for the operator chat and customer email

Provides consistent HTML formatting and escaping for every order notification
so customer-supplied cart fields can never break Telegram's HTML parser.
"""

import html
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from order_state import CreditOutcome, Order, OrderStatus
from pricing_utils import format_money

logger = logging.getLogger(__name__)

STORE_NAME = "Malok Recargas"

STATUS_LABELS: Dict[OrderStatus, str] = {
    OrderStatus.PENDING: "⏳ PENDIENTE",
    OrderStatus.PENDING_CONFIRMATION: "⏳ ESPERANDO CONFIRMACIÓN",
    OrderStatus.PROCESSING: "🔄 PROCESANDO",
    OrderStatus.CONFIRMED: "✅ CONFIRMADO (pendiente de entrega)",
    OrderStatus.CONFIRMED_ERROR_BALANCE: "⚠️ CONFIRMADO - ERROR AL ACREDITAR SALDO",
    OrderStatus.CONFIRMED_ERROR_DB: "🚨 CONFIRMADO - ERROR AL GUARDAR ESTADO",
    OrderStatus.FAILED_MISMATCH: "❌ FALLO: MONTO INCORRECTO",
    OrderStatus.FAILED_EXPIRED: "❌ FALLO: FACTURA EXPIRADA",
    OrderStatus.FAILED_ERROR: "❌ FALLO: ERROR DEL PROVEEDOR",
    OrderStatus.FAILED_CANCELLED: "❌ FALLO: CANCELADA",
    OrderStatus.DONE: "✅ REALIZADA",
}

SEPARATOR = "------------------------------------------------"

# Telegram rejects message text above 4096 characters
MAX_MESSAGE_LENGTH = 4096
# Customer-supplied values are clipped before escaping
MAX_FIELD_LENGTH = 256
TRIM_NOTICE = "<i>… mensaje recortado ({count} líneas)</i>"


def escape_html(text: Any) -> str:
    """
    Escape HTML special characters for safe display in Telegram HTML mode.

    Args:
        text: Raw text to escape

    Returns:
        HTML-escaped text safe for Telegram
    """
    if text is None or text == "":
        return ""
    return html.escape(str(text))


def format_bold(text: Any) -> str:
    return f"<b>{escape_html(text)}</b>"


def format_inline_code(text: Any) -> str:
    if text is None or text == "":
        return "<code></code>"
    return f"<code>{escape_html(text)}</code>"


def truncate_with_ellipsis(text: str, max_length: int = 50) -> str:
    """
    Truncate text with ellipsis if it exceeds max length.

    Args:
        text: Text to truncate
        max_length: Maximum length before truncation

    Returns:
        Truncated text with ellipsis if needed
    """
    if not text or len(text) <= max_length:
        return text or ""
    return text[:max_length - 3] + "..."


def status_label(status: OrderStatus) -> str:
    return STATUS_LABELS.get(status, status.value)


def clip(value: Any, max_length: int = MAX_FIELD_LENGTH) -> str:
    return truncate_with_ellipsis(str(value), max_length) if value is not None else ""


def fit_message(head: List[str], body: List[str], tail: List[str], limit: int = MAX_MESSAGE_LENGTH) -> str:
    """
    Join HTML lines into one message no longer than limit

    Every line is self-contained HTML, so the message is shortened by dropping
    whole body lines from the end and never by cutting inside a tag or entity.
    head and tail are always kept.

    Args:
        head: Leading lines (title, order id, totals)
        body: Lines that may be dropped
        tail: Trailing lines (contact, final status marker)
        limit: Maximum length in characters

    Returns:
        str: HTML text within limit
    """
    text = "\n".join(head + body + tail)
    if len(text) <= limit:
        return text

    budget = limit - len("\n".join(head + tail)) - len(TRIM_NOTICE.format(count=len(body))) - 2
    kept: List[str] = []
    for line in body:
        if len(line) + 1 > budget:
            break
        kept.append(line)
        budget -= len(line) + 1

    notice = TRIM_NOTICE.format(count=len(body) - len(kept))
    text = "\n".join(head + kept + [notice] + tail)
    if len(text) <= limit:
        logger.warning(f"✂️ Message trimmed: dropped {len(body) - len(kept)} of {len(body)} lines")
        return text

    # head and tail alone do not fit: fall back to plain text
    logger.warning(f"✂️ Message of {len(text)} chars sent as plain text")
    plain = html.unescape(re.sub(r"<[^>]+>", "", text))
    return escape_html(truncate_with_ellipsis(plain, limit // 5))


def format_line_item(index: int, item: Dict[str, Any]) -> List[str]:
    """Render one cart line, including the per-game account credentials the operator needs"""
    lines = [
        f"<b>📦 Producto {index}:</b>",
        f"🎮 Juego/Servicio: {format_bold(clip(item.get('game') or 'N/A'))}",
        f"📦 Paquete: {format_bold(clip(item.get('packageName') or 'N/A'))}",
    ]

    game = item.get('game')
    if game == 'Roblox' and item.get('robloxEmail') and item.get('robloxPassword'):
        lines.append(f"📧 Correo Roblox: {format_inline_code(clip(item['robloxEmail']))}")
        lines.append(f"🔑 Contraseña Roblox: {format_inline_code(clip(item['robloxPassword']))}")
    elif game == 'Call of Duty Mobile' and item.get('codmEmail') and item.get('codmPassword'):
        lines.append(f"📧 Correo CODM: {format_inline_code(clip(item['codmEmail']))}")
        lines.append(f"🔑 Contraseña CODM: {format_inline_code(clip(item['codmPassword']))}")
        lines.append(f"🔗 Vinculación CODM: {escape_html(clip(item.get('codmVinculation') or 'N/A'))}")
    elif item.get('playerId'):
        lines.append(f"👤 ID de Jugador: {format_bold(clip(item['playerId']))}")

    price = item.get('priceUSD') or item.get('priceVES')
    if price:
        currency = item.get('currency') or ('USD' if item.get('priceUSD') else 'VES')
        lines.append(f"💲 Precio (Est.): {escape_html(clip(format_money(price, currency)))}")

    return lines


def format_credit_outcome(order: Order, outcome: Optional[CreditOutcome]) -> List[str]:
    """Wallet crediting summary, only meaningful for wallet top-ups"""
    if not order.is_wallet_topup or outcome is None:
        return []

    lines = [f"<b>👛 RECARGA DE SALDO</b> (usuario {format_inline_code(clip(order.user_id or 'N/A'))})"]
    if outcome.already_applied:
        lines.append("ℹ️ El saldo ya había sido acreditado para esta orden. No se acreditó de nuevo.")
    elif outcome.credited:
        lines.append(f"💰 Acreditado: {format_bold(format_money(outcome.amount_usd))}")
        if outcome.new_balance is not None:
            lines.append(f"💼 Nuevo saldo: {format_bold(format_money(outcome.new_balance))}")
    elif outcome.uncertain:
        lines.append("⏳ Resultado del abono desconocido: el saldo pudo haberse acreditado. Reintentar no duplica.")
    elif outcome.attempted or outcome.error:
        lines.append(f"❌ No se pudo acreditar el saldo: {escape_html(clip(outcome.error or 'error desconocido'))}")

    if outcome.used_final_amount_fallback:
        lines.append("⚠️ Monto base ausente: se acreditó el monto final (incluye comisión). Revisar.")
    if outcome.needs_review:
        lines.append("🔎 <b>REQUIERE REVISIÓN MANUAL</b>")
    return lines


def notification_title(order: Order) -> str:
    if order.provider == 'wallet':
        return "🛍️ <b>¡NUEVA COMPRA PAGADA CON SALDO!</b> 🛍️"
    if order.provider == 'manual':
        method = clip((order.provider_details or {}).get('payment_method') or 'N/A', 64)
        return f"🧾 <b>¡NUEVO PAGO MANUAL POR VERIFICAR! ({escape_html(method)})</b>"
    provider = (order.provider or 'pasarela').capitalize()
    return f"✅ <b>¡PAGO POR PASARELA CONFIRMADO! ({escape_html(provider)})</b> ✅"


def format_order_notification(
    order: Order,
    outcome: Optional[CreditOutcome] = None,
    payment_summary: Optional[str] = None,
    limit: int = MAX_MESSAGE_LENGTH,
) -> str:
    """
    Build the operator chat message for a confirmed (or failed) order

    Long carts are shortened line by line; the totals, the crediting summary
    and the customer contact always survive.

    Args:
        order: Order after its status update
        outcome: Wallet crediting result for top-ups
        payment_summary: Provider-reported payment line, e.g. "0.0012 BTC (Plisio)"
        limit: Maximum message length

    Returns:
        str: HTML message text
    """
    head = [
        notification_title(order),
        "",
        f"<b>ID de Transacción:</b> {format_inline_code(order.order_id)}",
        f"<b>Estado:</b> {escape_html(status_label(order.status))}",
        f"💰 <b>TOTAL:</b> {format_bold(format_money(order.final_amount, order.currency))}",
    ]
    if payment_summary:
        head.append(f"💳 <b>Pagado:</b> {escape_html(clip(payment_summary))}")
    head.append(SEPARATOR)
    head.append("<b>🛒 DETALLES DEL CARRITO/PRODUCTO</b>")

    body: List[str] = []
    for index, item in enumerate(order.cart_details or [], start=1):
        if isinstance(item, dict):
            body.extend(format_line_item(index, item))
            body.append(SEPARATOR)

    tail: List[str] = []
    credit_lines = format_credit_outcome(order, outcome)
    if credit_lines:
        tail.extend(credit_lines)
        tail.append(SEPARATOR)

    tail.append(f"📧 Email Cliente: {escape_html(clip(order.email or 'N/A'))}")
    tail.append(f"📱 WhatsApp Cliente: {escape_html(clip(order.phone or 'N/A'))}")

    if order.status is OrderStatus.CONFIRMED:
        tail.append("")
        tail.append("👉 Entrega pendiente: marca la orden como realizada al completar la recarga.")
    elif order.status is OrderStatus.PENDING and order.provider == 'manual':
        tail.append("")
        tail.append("👉 Verifica el comprobante y marca la orden como realizada al completar la recarga.")
        if (order.provider_details or {}).get('receipt') == 'whatsapp':
            tail.append("<i>NOTA: Comprobante y datos de la cuenta se envían por WhatsApp.</i>")

    return fit_message(head, body, tail, limit)


def append_final_status_marker(original_text: str, order: Order, outcome: Optional[CreditOutcome] = None,
                               operator_name: Optional[str] = None, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Append the operator's final marker to an existing (HTML) notification, shortening the original if needed"""
    marker = ["", SEPARATOR, f"🏁 <b>ESTADO FINAL:</b> {escape_html(status_label(order.status))}"]
    if operator_name:
        marker.append(f"👤 Marcada por: {escape_html(clip(operator_name, 64))}")
    marker.extend(format_credit_outcome(order, outcome))

    original = original_text.rstrip().split("\n")
    return fit_message(original[:5], original[5:], marker, limit)


def format_order_email(order: Order, outcome: Optional[CreditOutcome] = None) -> Tuple[str, str]:
    """
    Customer email for a confirmed or completed order

    Returns:
        Tuple[str, str]: (subject, html body)
    """
    amount = escape_html(format_money(order.final_amount, order.currency))
    if order.status is OrderStatus.DONE:
        subject = f"✅ ¡Tu pedido #{order.order_id} ha sido completado!"
        intro = f"Tu pago de {amount} fue confirmado y tu pedido ya fue procesado."
    else:
        subject = f"✅ ¡Pago CONFIRMADO! Tu pedido #{order.order_id} está en proceso."
        intro = f"Tu pago de {amount} ha sido confirmado. Tu recarga está siendo procesada por nuestro equipo."

    items = "".join(
        f"<li>{escape_html(item.get('game') or 'N/A')} - {escape_html(item.get('packageName') or 'N/A')}</li>"
        for item in (order.cart_details or []) if isinstance(item, dict)
    )

    body = [f"<p>Hola,</p><p>{intro}</p>"]
    if items:
        body.append(f"<ul>{items}</ul>")
    if order.is_wallet_topup and outcome is not None and outcome.credited and outcome.new_balance is not None:
        body.append(f"<p>Tu nuevo saldo es {escape_html(format_money(outcome.new_balance))}.</p>")
    body.append(f"<p>Gracias por tu compra.<br>{STORE_NAME}</p>")
    return subject, "".join(body)
