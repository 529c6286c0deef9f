# bot.py
"""
Telegram launcher (optional).

Opens the web app and answers balance / history questions. The Telegram
user id is the account id.
"""

from __future__ import annotations

import os
import logging
from typing import Optional

from telegram import KeyboardButton, ReplyKeyboardMarkup, Update, WebAppInfo
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes

from .db import BetStatus
from .service import CrashGameService, demo_account_id
from .utils import format_balance, format_multiplier

logger = logging.getLogger("aviator.bot")

BASE_URL = os.getenv("BASE_URL", "https://your-app.onrender.com")

HISTORY_LIMIT = 10


def _service(context: ContextTypes.DEFAULT_TYPE) -> CrashGameService:
    return context.bot_data["service"]


async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.effective_user:
        return

    account = await _service(context).init_account(str(update.effective_user.id))

    await update.message.reply_text(
        f"🚀 *Aviator*\n\nBalance: {format_balance(account.balance)}\nReady to fly?",
        parse_mode="Markdown",
        reply_markup=ReplyKeyboardMarkup(
            [[KeyboardButton("▶️ Play Now", web_app=WebAppInfo(url=BASE_URL))]],
            resize_keyboard=True,
        ),
    )


async def balance(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.effective_user:
        return

    service = _service(context)
    user_id = str(update.effective_user.id)
    real = await service.init_account(user_id)
    demo = await service.init_account(user_id, demo=True)

    await update.message.reply_text(
        f"💰 Balance: {format_balance(real.balance)}\n"
        f"🎮 Demo: {format_balance(demo.balance)}"
    )


async def history(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.effective_user:
        return

    account_id = str(update.effective_user.id)
    if context.args and context.args[0].lower() == "demo":
        account_id = demo_account_id(account_id)

    bets = await _service(context).get_history(account_id, limit=HISTORY_LIMIT)
    if not bets:
        await update.message.reply_text("No games played yet")
        return

    lines = []
    for bet in bets:
        if bet.status == BetStatus.CASHED_OUT:
            lines.append(
                f"✅ {format_balance(bet.stake)} → {format_balance(bet.payout)} "
                f"at {format_multiplier(bet.exit_multiplier)}"
            )
        elif bet.status == BetStatus.LOST:
            lines.append(f"💥 {format_balance(bet.stake)} lost")
        else:
            lines.append(f"✈️ {format_balance(bet.stake)} in flight")

    await update.message.reply_text("\n".join(lines))


def build_application(token: str, service: CrashGameService) -> Application:
    app_bot = ApplicationBuilder().token(token).build()
    app_bot.bot_data["service"] = service
    app_bot.add_handler(CommandHandler("start", start))
    app_bot.add_handler(CommandHandler("balance", balance))
    app_bot.add_handler(CommandHandler("history", history))
    return app_bot


async def run_telegram_bot(token: str, service: CrashGameService) -> Optional[Application]:
    """
    Starts the bot inside the running event loop and returns it for shutdown.
    A bot that fails to start is logged and skipped; the game keeps running.
    """
    app_bot = build_application(token, service)

    try:
        logger.info("Bot initializing...")
        await app_bot.initialize()
        await app_bot.start()

        # Polling; webhooks need a public URL and a route of their own
        await app_bot.updater.start_polling()
        logger.info("Bot polling started.")
    except Exception as e:
        logger.error(f"Telegram Bot failed to start: {e}")
        return None

    return app_bot


async def stop_telegram_bot(app_bot: Application) -> None:
    await app_bot.updater.stop()
    await app_bot.stop()
    await app_bot.shutdown()
