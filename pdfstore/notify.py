import logging
import os
from abc import ABC, abstractmethod
from typing import List

import httpx
from jinja2 import DictLoader, Environment, select_autoescape
from sqlalchemy.ext.asyncio import AsyncSession

from .downloads import LINK_TTL_SECONDS, resolve_file
from .errors import UpstreamError
from .helpers import is_valid_email
from .model.db import Order
from .money import round_money
from .storage import SignedUrlProvider

logger = logging.getLogger(__name__)

RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
RESEND_API = "https://api.resend.com/emails"
FROM_EMAIL = os.environ.get("FROM_EMAIL", "Loja <noreply@example.com>")
EMAIL_BACKEND = os.getenv(
    "EMAIL_BACKEND", "resend" if RESEND_API_KEY else "log"
).lower()


TEMPLATES = {
    "order_confirmation.html": """
<!doctype html>
<html><body style="font-family: sans-serif">
  <h2>Pedido confirmado</h2>
  <p>Obrigado pela sua compra! Pedido <strong>#{{ order_ref }}</strong>.</p>
  <table cellpadding="6">
    {% for item in items %}
    <tr>
      <td>{{ item.name }} x{{ item.quantity }}</td>
      <td>R$ {{ item.total }}</td>
      <td>
        {% if item.url %}<a href="{{ item.url }}">Baixar</a>
        {% else %}Arquivo indisponivel{% endif %}
      </td>
    </tr>
    {% endfor %}
  </table>
  {% if discount %}<p>Desconto: R$ {{ discount }}</p>{% endif %}
  <p><strong>Total: R$ {{ total }}</strong></p>
  <p>Os links expiram em {{ ttl_minutes }} minutos. Voce pode gerar novos
     links na sua conta por {{ window_days }} dias.</p>
</body></html>
""",
}

env = Environment(
    loader=DictLoader(TEMPLATES), autoescape=select_autoescape(["html"])
)


class Notifier(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, html: str) -> None: ...


class ResendNotifier(Notifier):
    def __init__(self, http: httpx.AsyncClient, api_key: str,
                 sender: str = FROM_EMAIL):
        self.http = http
        self.api_key = api_key
        self.sender = sender

    async def send(self, to, subject, html):
        try:
            r = await self.http.post(
                RESEND_API,
                json={
                    "from": self.sender,
                    "to": [to],
                    "subject": subject,
                    "html": html,
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"email provider unreachable: {e}") from e
        if r.status_code >= 400:
            raise UpstreamError(
                f"email provider error {r.status_code}: {r.text}"
            )


class LogNotifier(Notifier):
    """Development notifier: logs and keeps what it would have sent."""

    def __init__(self):
        self.sent: List[dict] = []

    async def send(self, to, subject, html):
        self.sent.append({"to": to, "subject": subject, "html": html})
        logger.info("email to %s: %s", to, subject)


def new_notifier(http: httpx.AsyncClient) -> Notifier:
    if EMAIL_BACKEND == "resend":
        return ResendNotifier(http, RESEND_API_KEY)
    return LogNotifier()


async def send_order_confirmation(
    db: AsyncSession, order: Order, storage: SignedUrlProvider,
    notifier: Notifier,
) -> bool:
    if not is_valid_email(order.email):
        logger.warning("order %s has no usable email, skipping "
                       "confirmation", order.id)
        return False

    items = []
    for item in order.items:
        f = await resolve_file(db, item)
        url = None
        if f is not None:
            url = await storage.signed_url(f.path, LINK_TTL_SECONDS)
        else:
            logger.warning("no file for item %s of order %s",
                           item.id, order.id)
        items.append({
            "name": item.name,
            "quantity": item.quantity,
            "total": round_money(item.total),
            "url": url,
        })

    html = env.get_template("order_confirmation.html").render(
        order_ref=order.id[:8].upper(),
        items=items,
        discount=(
            round_money(order.discount_amount)
            if order.discount_amount else None
        ),
        total=round_money(order.total),
        ttl_minutes=LINK_TTL_SECONDS // 60,
        window_days=30,
    )
    await notifier.send(
        order.email, f"Pedido confirmado #{order.id[:8].upper()}", html
    )
    logger.info("confirmation email for order %s sent to %s",
                order.id, order.email)
    return True
