"""
Telegram transport: delivers queue rows through a Telegram bot.

Targets take the form ``<chat_id>@telegram`` (negative ids for groups and
channels are written as ``-100123@telegram``). The provider message id is the
Telegram ``message_id``; the sending account is the bot's own user id.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import telegram.error

from ..config import settings
from ..constants import TELEGRAM_SERVER
from ..exceptions import InvalidTargetError, ServiceUnavailableError, TransportError
from .address import Address
from .base import Transport

if TYPE_CHECKING:
    from telegram import Bot

logger = logging.getLogger(__name__)


def _chat_id(address: Address) -> int:
    if address.server != TELEGRAM_SERVER:
        raise InvalidTargetError(
            f"invalid target {address}: telegram transport only sends to @{TELEGRAM_SERVER}"
        )
    try:
        return int(address.user)
    except ValueError:
        raise InvalidTargetError(f"invalid target {address}: chat id must be numeric") from None


class TelegramTransport(Transport):
    def __init__(self, token: str | None = None, bot: Bot | None = None) -> None:
        if bot is None:
            from telegram import Bot
            bot = Bot(token or settings.telegram_bot_token)
        self.bot = bot
        self._account_id: str | None = None

    @property
    def account_id(self) -> str | None:
        return self._account_id

    async def start(self) -> None:
        try:
            await self.bot.initialize()
        except telegram.error.TelegramError as e:
            raise ServiceUnavailableError(f"telegram bot could not initialise: {e}") from e
        self._account_id = str(self.bot.id)
        logger.info("Telegram transport ready (bot id %s)", self._account_id)

    async def close(self) -> None:
        await self.bot.shutdown()

    async def send(self, address: Address, content: str) -> str:
        chat_id = _chat_id(address)
        try:
            message = await self.bot.send_message(chat_id=chat_id, text=content)
        except telegram.error.BadRequest as e:
            # BadRequest subclasses NetworkError but is the API rejecting the call.
            raise TransportError(str(e)) from e
        except (telegram.error.NetworkError, telegram.error.TimedOut) as e:
            raise ServiceUnavailableError(f"telegram unreachable: {e}") from e
        except telegram.error.TelegramError as e:
            raise TransportError(str(e)) from e
        return str(message.message_id)
