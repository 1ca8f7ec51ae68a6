"""
bot.py — Telegram bot handlers.

All visual formatting is delegated to style.py.
Scan state lives in one CaptureWizard per user_id (see wizard.py); confirmed
photos are persisted through session_store so a restart does not lose them.
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from functools import partial
from typing import Optional

from telegram import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    LinkPreviewOptions,
    Message,
    Update,
)
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

import config
import database as db
import key_store
import pipeline
import style
from errors import AcquisitionError, ConfigurationError, WizardStateError
from wizard import CaptureWizard, Phase

logger = logging.getLogger(__name__)

# ── Callback data ──────────────────────────────────────────────────────────────
CB_CONFIRM = "scan:confirm"
CB_RETAKE  = "scan:retake"
CB_NEW     = "scan:new"
CB_RETRY   = "scan:retry"

_NO_PREVIEW = LinkPreviewOptions(is_disabled=True)


# ── Wizards ────────────────────────────────────────────────────────────────────

_wizards: dict[int, CaptureWizard] = {}


def get_wizard(user_id: int) -> CaptureWizard:
    if user_id not in _wizards:
        _wizards[user_id] = CaptureWizard(user_id, partial(pipeline.finalize_scan, user_id))
    return _wizards[user_id]


# ── Rate limiter ───────────────────────────────────────────────────────────────
_rate_buckets: dict[int, deque] = defaultdict(deque)


def _is_rate_limited(user_id: int) -> bool:
    now    = time.monotonic()
    bucket = _rate_buckets[user_id]
    while bucket and now - bucket[0] > config.RATE_WINDOW_SECS:
        bucket.popleft()
    if len(bucket) >= config.RATE_MAX_REQUESTS:
        return True
    bucket.append(now)
    return False


# ── Keyboards ──────────────────────────────────────────────────────────────────

def review_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[
        InlineKeyboardButton("✅  Use this photo", callback_data=CB_CONFIRM),
        InlineKeyboardButton("🔄  Retake",         callback_data=CB_RETAKE),
    ]])


def result_keyboard(query: Optional[str] = None) -> InlineKeyboardMarkup:
    """Fallback search links (when a query is given) + scan another."""
    rows = []
    if query is not None:
        rows = [
            [InlineKeyboardButton(f"🔎  {title}", url=url)]
            for title, url in style.fallback_links(query)
        ]
    rows.append([InlineKeyboardButton("📸  Scan another", callback_data=CB_NEW)])
    return InlineKeyboardMarkup(rows)


def error_keyboard(can_retry: bool) -> InlineKeyboardMarkup:
    rows = []
    if can_retry:
        rows.append([InlineKeyboardButton("🔁  Retry analysis", callback_data=CB_RETRY)])
    rows.append([InlineKeyboardButton("📸  Start over", callback_data=CB_NEW)])
    return InlineKeyboardMarkup(rows)


# ── Rendering ──────────────────────────────────────────────────────────────────

def render_state(wizard: CaptureWizard) -> tuple[str, InlineKeyboardMarkup]:
    """Text + keyboard for a wizard that is Done or in Error."""
    st = wizard.state

    if st.phase is Phase.ERROR:
        can_retry = len(st.confirmed_images) >= wizard.steps
        if st.misconfigured:
            return style.error_config(st.error or ""), error_keyboard(can_retry=False)
        if st.needs_credential:
            text = style.error_config(st.error or "") + "\n\n" + style.key_prompt(config.EXTRACTION_PROVIDER)
        else:
            text = style.error_extraction(st.error or "")
        return text, error_keyboard(can_retry)

    outcome: pipeline.ScanOutcome = st.result
    record  = outcome.record
    show    = config.SHOW_COST_INFO

    if not outcome.confident:
        return style.not_identified(record), result_keyboard(record.fallback_query)
    if outcome.mode == "lookup":
        if outcome.lookup is not None and outcome.lookup.is_found:
            return (
                style.drug_card(outcome.lookup, record, outcome.extraction, show_cost=show),
                result_keyboard(),
            )
        return style.not_found(record), result_keyboard(record.fallback_query)
    return style.advice_card(record, outcome.extraction, show_cost=show), result_keyboard(record.fallback_query)


async def _edit_or_send(msg: Message, text: str, markup: Optional[InlineKeyboardMarkup] = None) -> None:
    try:
        await msg.edit_text(
            text,
            parse_mode="MarkdownV2",
            reply_markup=markup,
            link_preview_options=_NO_PREVIEW,
        )
        return
    except TelegramError as exc:
        logger.warning("edit failed (%s), sending a new message", exc)

    try:
        await msg.chat.send_message(
            text,
            parse_mode="MarkdownV2",
            reply_markup=markup,
            link_preview_options=_NO_PREVIEW,
        )
    except TelegramError as exc:
        logger.error("Could not deliver card to chat %s: %s", msg.chat_id, exc)
        await msg.chat.send_message(
            style.error_render(),
            parse_mode="MarkdownV2",
            reply_markup=error_keyboard(can_retry=False),
        )


async def _clear_buttons(msg: Optional[Message]) -> None:
    if msg is None:
        return
    try:
        await msg.edit_reply_markup(reply_markup=None)
    except TelegramError as exc:
        logger.debug("could not remove keyboard: %s", exc)


async def _run_finalize(wizard: CaptureWizard, chat_msg: Message) -> None:
    """Show the loading card, run the analysis, edit in the outcome."""
    loading = await chat_msg.reply_text(
        style.loading_finalize(len(wizard.state.confirmed_images)),
        parse_mode="MarkdownV2",
    )
    await wizard.finalize()
    text, markup = render_state(wizard)
    await _edit_or_send(loading, text, markup)


async def _send_step_prompt(msg: Message, wizard: CaptureWizard) -> None:
    await msg.reply_text(
        style.step_prompt(wizard.state.step_index, wizard.steps),
        parse_mode="MarkdownV2",
    )


# ── Commands ───────────────────────────────────────────────────────────────────

async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    wizard = get_wizard(update.effective_user.id)
    st = await wizard.start_scan()

    if st.phase is Phase.FINALIZING:
        await update.message.reply_text(style.busy(), parse_mode="MarkdownV2")
        return
    if st.phase is Phase.REVIEWING:
        await update.message.reply_text(style.review_pending(), parse_mode="MarkdownV2")
        return
    if wizard.resumed and st.step_index > 0:
        await update.message.reply_text(
            style.session_resumed(st.step_index, wizard.steps),
            parse_mode="MarkdownV2",
        )
        return

    await update.message.reply_text(style.welcome(wizard.steps), parse_mode="MarkdownV2")
    await _send_step_prompt(update.message, wizard)


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(
        style.help_text(config.SCAN_STEPS),
        parse_mode="MarkdownV2",
    )


async def cmd_new(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    wizard = get_wizard(update.effective_user.id)
    try:
        await wizard.reset_session()
    except WizardStateError:
        await update.message.reply_text(style.busy(), parse_mode="MarkdownV2")
        return
    await _send_step_prompt(update.message, wizard)


async def _save_key(update: Update, context: ContextTypes.DEFAULT_TYPE, value: str) -> None:
    user_id = update.effective_user.id
    msg = update.message

    # The key must not stay in the chat history
    try:
        await msg.delete()
    except TelegramError as exc:
        logger.warning("Could not delete key message for user %s: %s", user_id, exc)

    await key_store.set(user_id, value)
    logger.info("User %s saved an API key", user_id)

    wizard = get_wizard(user_id)
    markup = None
    if wizard.phase is Phase.ERROR and wizard.state.needs_credential:
        markup = error_keyboard(can_retry=True)
    await msg.chat.send_message(
        style.key_saved(key_store.mask(value.strip())),
        parse_mode="MarkdownV2",
        reply_markup=markup,
    )


async def cmd_setkey(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    value = " ".join(context.args or []).strip()
    if not value:
        context.user_data["awaiting_key"] = True
        await update.message.reply_text(
            style.key_prompt(config.EXTRACTION_PROVIDER),
            parse_mode="MarkdownV2",
        )
        return
    context.user_data.pop("awaiting_key", None)
    await _save_key(update, context, value)


async def cmd_deletekey(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    existed = await key_store.delete(update.effective_user.id)
    await update.message.reply_text(style.key_deleted(existed), parse_mode="MarkdownV2")


async def cmd_settings(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user_id = update.effective_user.id
    key = await key_store.get(user_id)
    try:
        stats = await db.get_user_stats(user_id)
    except Exception as exc:
        logger.warning("Could not load stats for user %s: %s", user_id, exc)
        stats = None
    await update.message.reply_text(
        style.settings_card(
            key_store.mask(key),
            config.EXTRACTION_PROVIDER,
            pipeline.result_mode(),
            config.SCAN_STEPS,
            stats,
        ),
        parse_mode="MarkdownV2",
    )


# ── Photos ─────────────────────────────────────────────────────────────────────

async def _download_image(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bytes:
    msg = update.message
    file_id = msg.photo[-1].file_id if msg.photo else msg.document.file_id
    tg_file = await context.bot.get_file(file_id)
    return bytes(await tg_file.download_as_bytearray())


async def handle_photo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user_id = update.effective_user.id
    msg = update.message

    if _is_rate_limited(user_id):
        await msg.reply_text(
            style.error_rate_limited(config.RATE_MAX_REQUESTS, config.RATE_WINDOW_SECS),
            parse_mode="MarkdownV2",
        )
        return

    wizard = get_wizard(user_id)
    if wizard.phase is Phase.DONE:
        await wizard.start_scan()

    raw = await _download_image(update, context)

    try:
        st = await wizard.capture(raw)
    except AcquisitionError as exc:
        logger.info("User %s sent an unreadable image: %s", user_id, exc)
        await msg.reply_text(
            style.error_acquisition(wizard.state.step_index, wizard.steps),
            parse_mode="MarkdownV2",
        )
        return
    except WizardStateError:
        phase = wizard.phase
        if phase is Phase.REVIEWING:
            await msg.reply_text(style.review_pending(), parse_mode="MarkdownV2")
        elif phase is Phase.ERROR:
            text, markup = render_state(wizard)
            await msg.reply_text(text, parse_mode="MarkdownV2", reply_markup=markup)
        else:
            await msg.reply_text(style.busy(), parse_mode="MarkdownV2")
        return

    draft = st.pending_draft
    await msg.reply_photo(
        photo=draft.data,
        caption=style.review_card(st.step_index, wizard.steps, draft.size_kb),
        parse_mode="MarkdownV2",
        reply_markup=review_keyboard(),
    )


# ── Buttons ────────────────────────────────────────────────────────────────────

async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    await query.answer()
    wizard = get_wizard(update.effective_user.id)
    data   = query.data
    msg    = query.message

    if data == CB_CONFIRM:
        if wizard.phase is not Phase.REVIEWING:
            await _clear_buttons(msg)
            return
        try:
            st = await wizard.confirm_current()
        except Exception as exc:
            logger.error("Saving scan progress failed for user %s: %s", wizard.owner, exc)
            await msg.reply_text(style.error_save_failed(), parse_mode="MarkdownV2")
            return
        await _clear_buttons(msg)
        if st.phase is Phase.FINALIZING:
            await _run_finalize(wizard, msg)
        else:
            await _send_step_prompt(msg, wizard)
        return

    if data == CB_RETAKE:
        st = await wizard.retake_current()
        await _clear_buttons(msg)
        if st.phase is Phase.IDLE:
            await _send_step_prompt(msg, wizard)
        return

    if data == CB_NEW:
        try:
            await wizard.reset_session()
        except WizardStateError:
            await msg.reply_text(style.busy(), parse_mode="MarkdownV2")
            return
        await _clear_buttons(msg)
        await _send_step_prompt(msg, wizard)
        return

    if data == CB_RETRY:
        try:
            await wizard.retry_finalization()
        except WizardStateError:
            await _clear_buttons(msg)
            await _send_step_prompt(msg, wizard)
            return
        await _clear_buttons(msg)
        await _run_finalize(wizard, msg)
        return


async def handle_non_photo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if context.user_data.pop("awaiting_key", False):
        await _save_key(update, context, update.message.text)
        return
    await update.message.reply_text(
        style.not_a_photo(), parse_mode="MarkdownV2"
    )


# ── App factory ────────────────────────────────────────────────────────────────

async def _post_init(application: Application) -> None:
    await db.init_db()


def build_application() -> Application:
    if not config.TELEGRAM_BOT_TOKEN:
        raise ConfigurationError("TELEGRAM_BOT_TOKEN is not set")

    app = (
        Application.builder()
        .token(config.TELEGRAM_BOT_TOKEN)
        .post_init(_post_init)
        .build()
    )

    app.add_handler(CommandHandler("start",     cmd_start))
    app.add_handler(CommandHandler("help",      cmd_help))
    app.add_handler(CommandHandler("new",       cmd_new))
    app.add_handler(CommandHandler("setkey",    cmd_setkey))
    app.add_handler(CommandHandler("deletekey", cmd_deletekey))
    app.add_handler(CommandHandler("settings",  cmd_settings))
    app.add_handler(MessageHandler(filters.PHOTO | filters.Document.IMAGE, handle_photo))
    app.add_handler(CallbackQueryHandler(handle_callback))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_non_photo))
    return app
