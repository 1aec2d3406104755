# bot.py - Telegram front end and process entry point
import asyncio
import logging
import sys

from telegram import Update
from telegram.constants import ParseMode
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from . import log_monitor
from .alerts import OperatorAlerter
from .config import BOT_TYPES, Settings
from .engine import HostingEngine
from .errors import HostingError
from .health import HealthReportHandler
from .messenger import TelegramMessenger, escape_markdown
from .models import DeploymentRequest
from .platform import HerokuClient
from .storage import Database
from .web import FlaskServer

# ==================== LOGGING ====================
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)

REMINDER_INTERVAL = 60 * 60  # 1 hour


def get_engine(context: ContextTypes.DEFAULT_TYPE) -> HostingEngine:
    return context.application.bot_data['engine']


# ==================== COMMAND HANDLERS ====================
async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /start command"""
    await update.message.reply_text(
        "🤖 *Bot Hosting*\n\n"
        "Deploy your WhatsApp bot in a few minutes.\n\n"
        "📋 *Commands:*\n"
        "• `/deploy <name> <session_id> <type> <deploy_key|trial>`\n"
        "• `/mybots` - List your bots\n"
        "• `/restart <name>` - Restart a bot\n"
        "• `/delete <name>` - Delete a bot\n\n"
        f"Bot types: {', '.join(BOT_TYPES)}\n"
        "The free trial runs for 1 hour and can be used once every 14 days.",
        parse_mode=ParseMode.MARKDOWN
    )


async def deploy_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /deploy <name> <session_id> <type> <deploy_key|trial>"""
    if len(context.args) < 4:
        await update.message.reply_text(
            "Usage: `/deploy <name> <session_id> <type> <deploy_key|trial>`\n"
            "Example: `/deploy my-bot-01 levanter_abc123 levanter trial`",
            parse_mode=ParseMode.MARKDOWN
        )
        return

    app_name, session_token, bot_type, key = context.args[:4]
    is_trial = key.lower() == 'trial'
    request = DeploymentRequest(
        user_id=update.effective_user.id,
        app_name=app_name,
        session_token=session_token,
        bot_type=bot_type,
        is_free_trial=is_trial,
        auto_status_view='--status-view' in context.args[4:],
        deploy_key=None if is_trial else key,
    )
    get_engine(context).start_deployment(request, chat_id=update.effective_chat.id)


async def mybots_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /mybots command"""
    bots = get_engine(context).list_bots(update.effective_user.id)
    if not bots:
        await update.message.reply_text("📭 You haven't deployed any bots yet. Use /deploy to start.")
        return

    status_emoji = {'live': '🟢', 'degraded': '🟡'}
    text = f"🤖 *Your Bots* ({len(bots)})\n\n"
    for i, bot in enumerate(bots, 1):
        text += f"{i}. {status_emoji.get(bot.status, '❓')} `{bot.app_name}`\n"
        text += f"   Type: {bot.bot_type}{' (free trial)' if bot.is_free_trial else ''}\n"
        text += f"   Created: {bot.created_at.strftime('%Y-%m-%d %H:%M')}\n"
    await update.message.reply_text(text, parse_mode=ParseMode.MARKDOWN)


async def restart_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /restart command"""
    if not context.args:
        await update.message.reply_text("Usage: `/restart <bot_name>`", parse_mode=ParseMode.MARKDOWN)
        return
    app_name = context.args[0].lower()
    try:
        await get_engine(context).restart_bot(app_name, update.effective_user.id)
    except HostingError as e:
        await update.message.reply_text(f"❌ {e.user_message()}")
        return
    await update.message.reply_text(
        f"🔄 Bot `{escape_markdown(app_name)}` is restarting. It may take a minute to come back.",
        parse_mode=ParseMode.MARKDOWN
    )


async def delete_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /delete command"""
    if not context.args:
        await update.message.reply_text(
            "Usage: `/delete <bot_name>`\n\n⚠️ *Warning:* This will delete the bot permanently!",
            parse_mode=ParseMode.MARKDOWN
        )
        return
    app_name = context.args[0].lower()
    try:
        await get_engine(context).delete_bot(app_name, update.effective_user.id)
    except HostingError as e:
        await update.message.reply_text(f"❌ {e.user_message()}")
        return
    await update.message.reply_text(
        f"🗑️ Bot `{escape_markdown(app_name)}` has been deleted.", parse_mode=ParseMode.MARKDOWN
    )


# ==================== ADMIN COMMANDS ====================
async def generate_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /generate [uses] [user_id] (admin only)"""
    try:
        uses = int(context.args[0]) if context.args else 1
        bound_to = int(context.args[1]) if len(context.args) > 1 else None
    except ValueError:
        await update.message.reply_text("Usage: `/generate [uses] [user_id]`", parse_mode=ParseMode.MARKDOWN)
        return
    try:
        deploy_key = get_engine(context).generate_deploy_key(update.effective_user.id, uses, user_id=bound_to)
    except HostingError as e:
        await update.message.reply_text(f"❌ {e.user_message()}")
        return
    text = f"🔑 Deploy key: `{deploy_key.key}`\nUses: {deploy_key.uses_left}"
    if bound_to is not None:
        text += f"\nOnly for user: `{bound_to}`"
    await update.message.reply_text(text, parse_mode=ParseMode.MARKDOWN)


async def keys_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /keys command (admin only)"""
    try:
        keys = get_engine(context).list_deploy_keys(update.effective_user.id)
    except HostingError as e:
        await update.message.reply_text(f"❌ {e.user_message()}")
        return
    if not keys:
        await update.message.reply_text("📭 No deploy keys yet. Use /generate to create one.")
        return

    text = f"🔑 *Deploy Keys* ({len(keys)})\n\n"
    for deploy_key in keys:
        text += f"• `{deploy_key.key}` - {deploy_key.uses_left} use(s) left"
        if deploy_key.user_id is not None:
            text += f" (user `{deploy_key.user_id}`)"
        text += "\n"
    await update.message.reply_text(text, parse_mode=ParseMode.MARKDOWN)


# ==================== SESSION UPDATES ====================
async def button_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle the Change Session ID button"""
    query = update.callback_query
    await query.answer()

    if not query.data.startswith("change_session:"):
        return
    _, app_name, owner_id = query.data.split(":", 2)
    if str(query.from_user.id) != owner_id:
        await query.edit_message_text("❌ This bot belongs to someone else.")
        return
    context.user_data['awaiting_session_for'] = app_name
    await query.message.reply_text(
        f"🔑 Send the new session ID for `{escape_markdown(app_name)}`.\nType /cancel to abort.",
        parse_mode=ParseMode.MARKDOWN
    )


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle a pending session update"""
    app_name = context.user_data.get('awaiting_session_for')
    if not app_name:
        return
    try:
        await get_engine(context).update_session(app_name, update.effective_user.id, update.message.text)
    except HostingError as e:
        await update.message.reply_text(f"❌ {e.user_message()}")
        return
    context.user_data.pop('awaiting_session_for', None)
    await update.message.reply_text(
        f"✅ Session ID updated for `{escape_markdown(app_name)}`. The bot is restarting.",
        parse_mode=ParseMode.MARKDOWN
    )


async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /cancel command"""
    if context.user_data.pop('awaiting_session_for', None):
        await update.message.reply_text("❌ Session update cancelled.")
    else:
        await update.message.reply_text("Nothing to cancel.")


# ==================== JOBS ====================
async def remind_logged_out(context: ContextTypes.DEFAULT_TYPE):
    try:
        await get_engine(context).scheduler.remind_logged_out_bots()
    except Exception as e:
        logger.error(f"Logged-out reminder job failed: {e}", exc_info=True)


# ==================== MAIN FUNCTION ====================
def build_application(settings: Settings) -> Application:
    application = Application.builder().token(settings.telegram_bot_token).build()

    platform = HerokuClient(settings.heroku_api_key)
    store = Database(settings.db_file, trial_cooldown_days=settings.trial_cooldown_days)
    messenger = TelegramMessenger(application.bot, settings.operator_chat_ids)
    engine = HostingEngine(settings, platform, store, messenger)
    application.bot_data['engine'] = engine

    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("help", start_command))
    application.add_handler(CommandHandler("deploy", deploy_command))
    application.add_handler(CommandHandler("mybots", mybots_command))
    application.add_handler(CommandHandler("restart", restart_command))
    application.add_handler(CommandHandler("delete", delete_command))
    application.add_handler(CommandHandler("cancel", cancel_command))
    application.add_handler(CommandHandler("generate", generate_command))
    application.add_handler(CommandHandler("keys", keys_command))

    # Add callback handler
    application.add_handler(CallbackQueryHandler(button_callback))

    # Health reports posted by deployed bots
    health = HealthReportHandler(engine, settings.channel_id)
    application.add_handler(MessageHandler(filters.UpdateType.CHANNEL_POST & filters.TEXT, health.handle_post))

    # Add message handler
    application.add_handler(MessageHandler(filters.ChatType.PRIVATE & filters.TEXT & ~filters.COMMAND,
                                           handle_message))

    if application.job_queue:
        application.job_queue.run_repeating(remind_logged_out, interval=REMINDER_INTERVAL, first=60)
        logger.info("✅ Logged-out reminder job scheduled")

    async def post_init(app: Application):
        loop = asyncio.get_running_loop()
        server = FlaskServer(engine, loop, settings.flask_host, settings.flask_port)
        server.start()
        app.bot_data['flask_server'] = server

        trigger = log_monitor.RestartTrigger(
            OperatorAlerter(settings.telegram_bot_token, settings.operator_chat_ids),
            app_name=settings.app_name,
            alert_state=log_monitor.LogoutAlertState(settings.logout_alert_cooldown),
            restart_enabled=settings.enable_self_restart,
            restart_delay=settings.restart_delay_minutes * 60,
            loop=loop,
        )
        log_monitor.install(trigger)
        app.bot_data['restart_trigger'] = trigger

    async def post_shutdown(app: Application):
        await engine.shutdown()
        await platform.close()
        server = app.bot_data.get('flask_server')
        if server:
            server.stop()

    application.post_init = post_init
    application.post_shutdown = post_shutdown
    return application


def main():
    """Start the hosting bot"""
    settings = Settings.from_env()
    if not settings.telegram_bot_token:
        logger.error("TELEGRAM_BOT_TOKEN environment variable is not set!")
        sys.exit(1)
    if not settings.heroku_api_key:
        logger.warning("HEROKU_API_KEY is not set, deployments will fail")

    application = build_application(settings)
    logger.info("🤖 Bot hosting is starting...")
    application.run_polling(allowed_updates=Update.ALL_TYPES, drop_pending_updates=True)


if __name__ == '__main__':
    main()
