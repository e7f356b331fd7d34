import asyncio
import enum
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from telegram import Document, KeyboardButton, LinkPreviewOptions, Message, ReplyKeyboardMarkup, Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters
from telegram.helpers import escape_markdown

load_dotenv()

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger("filebot")

BOT_NAME = "ZSNET Bot"
CONFIG_FILE = Path(os.getenv("BOT_CONFIG_FILE", "config.json"))
PLACEHOLDER_TOKEN = "YOUR_BOT_TOKEN"
DEFAULT_CACHE_FILE = "file_cache.json"
POLL_TIMEOUT = 60
CONNECT_TIMEOUT = 5.0
DOWNLOAD_PREFIX = "download_"
PHOTO_PREFIX = "photo_"
VIDEO_PREFIX = "video_"
DOCUMENT_PREFIX = "document_"
MAX_TELEGRAM_REPLY_CHARS = 4096

HELP_LABEL = "❓ Help"
FILES_LABEL = "📂 Files"
DELETE_LABEL = "🗑 Delete"
UPLOAD_LABEL = "📤 Upload"

WELCOME_TEXT = (
    f"Welcome to {BOT_NAME}\n"
    "Send me a file to upload it\n"
    "Use /list to see stored files\n"
    "Use /delete <name> to delete a file"
)
UPLOAD_HINT_TEXT = "Send me a document, photo or video and I will keep it for you."
NO_FILES_TEXT = "No files stored yet."
FILE_NOT_FOUND_TEXT = "File not found."
DELETE_PROMPT_TEXT = "Give a file name after /delete, or reply to a file message with /delete."
DELETE_MISSING_TEXT = "No file with that name."
SAVED_TEXT = "File saved."
SAVE_FAILED_TEXT = "File save failed."
PHOTO_SAVED_TEXT = "Photo saved."
VIDEO_SAVED_TEXT = "Video saved."
INVALID_TEXT = "Unknown command."


class ConfigError(RuntimeError):
    pass


@dataclass
class BotConfig:
    bot_token: str
    bot_username: str = ""
    private_chat_id: int = 0
    cache_file_path: str = DEFAULT_CACHE_FILE
    proxy_url: str = ""


def _placeholder_config() -> Dict[str, Any]:
    return {
        "botToken": PLACEHOLDER_TOKEN,
        "botUsername": "",
        "privateChatID": 0,
        "cacheFilePath": DEFAULT_CACHE_FILE,
        "proxyURL": "",
    }


def load_config(path: Path = CONFIG_FILE) -> BotConfig:
    """Read the JSON config, creating a placeholder file on first run.

    Environment variables (``BOT_TOKEN``, ``BOT_USERNAME``, ``PRIVATE_CHAT_ID``,
    ``CACHE_FILE_PATH``, ``PROXY_URL``) override the file when set.
    """
    if not path.exists():
        path.write_text(json.dumps(_placeholder_config(), indent=2), encoding="utf-8")
        raise ConfigError(f"Config file {path} was missing; a template was written, fill in botToken.")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Failed to read config {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {path} must be a JSON object.")

    token = os.getenv("BOT_TOKEN") or str(raw.get("botToken") or "")
    username = os.getenv("BOT_USERNAME") or str(raw.get("botUsername") or "")
    chat_id = os.getenv("PRIVATE_CHAT_ID") or raw.get("privateChatID") or 0
    cache_path = os.getenv("CACHE_FILE_PATH") or str(raw.get("cacheFilePath") or DEFAULT_CACHE_FILE)
    proxy_url = os.getenv("PROXY_URL") or str(raw.get("proxyURL") or "")

    if not token or token == PLACEHOLDER_TOKEN:
        raise ConfigError("botToken is missing. Put it in the config file or BOT_TOKEN in .env.")
    try:
        chat_id = int(chat_id)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"privateChatID must be an integer, got {chat_id!r}") from exc
    return BotConfig(
        bot_token=token,
        bot_username=username.lstrip("@"),
        private_chat_id=chat_id,
        cache_file_path=cache_path,
        proxy_url=proxy_url,
    )


class RegistryStore:
    """JSON file holding the display name -> file_id mapping."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except Exception as exc:
            logger.warning("Failed to load %s, starting empty: %s", self.path, exc)
            return {}
        if not isinstance(data, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in data.items()
        ):
            logger.warning("Cache %s is not a name -> file id object, starting empty", self.path)
            return {}
        logger.info("File cache loaded from %s (%d entries)", self.path, len(data))
        return data

    def save(self, mapping: Dict[str, str]) -> bool:
        try:
            self.path.write_text(json.dumps(mapping, ensure_ascii=False, indent=2), encoding="utf-8")
        except (OSError, TypeError) as exc:
            logger.warning("Failed to save cache %s: %s", self.path, exc)
            return False
        logger.info("File cache saved (%d entries)", len(mapping))
        return True


def file_stem(name: str) -> str:
    return os.path.splitext(name)[0]


class FileRegistry:
    def __init__(self, store: RegistryStore) -> None:
        self.store = store
        self.files: Dict[str, str] = store.load()

    def __len__(self) -> int:
        return len(self.files)

    def __contains__(self, name: object) -> bool:
        return name in self.files

    def put(self, name: str, file_id: str) -> None:
        self.files[name] = file_id
        self.store.save(self.files)

    def get(self, name: str) -> Optional[str]:
        return self.files.get(name)

    def remove(self, name: str) -> bool:
        if name not in self.files:
            return False
        del self.files[name]
        self.store.save(self.files)
        return True

    def find_by_stem(self, stem: str) -> Optional[Tuple[str, str]]:
        # First match in insertion order wins when two names share a stem.
        for name, file_id in self.files.items():
            if file_stem(name) == stem:
                return file_id, name
        return None

    def names(self) -> List[str]:
        return list(self.files)

    def is_empty(self) -> bool:
        return not self.files


def escape_md(text: str, entity_type: Optional[str] = None) -> str:
    return escape_markdown(text, version=2, entity_type=entity_type)


def encode_deep_link_name(stem: str) -> str:
    return stem.replace(" ", "_")


def decode_deep_link_name(token: str) -> str:
    return token.replace("_", " ")


def build_deep_link(bot_username: str, stem: str) -> str:
    return f"https://t.me/{bot_username}?start={DOWNLOAD_PREFIX}{encode_deep_link_name(stem)}"


def render_file_list(
    names: List[str], bot_username: str, limit: int = MAX_TELEGRAM_REPLY_CHARS
) -> List[str]:
    """Render the numbered MarkdownV2 list, split into messages of at most ``limit`` chars."""
    chunks: List[str] = []
    current = "Files:"
    for index, name in enumerate(names, start=1):
        stem = file_stem(name)
        link = escape_md(build_deep_link(bot_username, stem), entity_type="text_link")
        line = f"{index}\\. [{escape_md(stem)}]({link})"
        if len(current) + 1 + len(line) > limit:
            chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}"
    chunks.append(current)
    return chunks


def document_name(document: Document, sent_at: datetime) -> str:
    # Nameless documents are keyed by the upload message's date so a reply can find them again.
    return document.file_name or f"{DOCUMENT_PREFIX}{int(sent_at.timestamp())}"


def main_keyboard() -> ReplyKeyboardMarkup:
    rows = [
        [KeyboardButton(HELP_LABEL), KeyboardButton(FILES_LABEL)],
        [KeyboardButton(DELETE_LABEL), KeyboardButton(UPLOAD_LABEL)],
    ]
    return ReplyKeyboardMarkup(rows, resize_keyboard=True, is_persistent=True)


class CommandKind(enum.Enum):
    DOWNLOAD = "download"
    HELP = "help"
    LIST = "list"
    DELETE = "delete"
    UPLOAD_HINT = "upload_hint"
    UPLOAD_DOCUMENT = "upload_document"
    UPLOAD_PHOTO = "upload_photo"
    UPLOAD_VIDEO = "upload_video"
    INVALID = "invalid"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    argument: str = ""


LABEL_COMMANDS = {
    HELP_LABEL: CommandKind.HELP,
    FILES_LABEL: CommandKind.LIST,
    DELETE_LABEL: CommandKind.DELETE,
    UPLOAD_LABEL: CommandKind.UPLOAD_HINT,
}
SLASH_COMMANDS = {
    "/start": CommandKind.HELP,
    "/help": CommandKind.HELP,
    "/list": CommandKind.LIST,
    "/delete": CommandKind.DELETE,
}


def split_command(text: str) -> Tuple[str, str, str]:
    """Return ``(command, addressee, argument)``; addressee is the ``@BotUsername`` suffix, if any."""
    parts = (text or "").strip().split(maxsplit=1)
    if not parts or not parts[0].startswith("/"):
        return "", "", ""
    # Group chats send commands as /list@BotUsername
    token, _, addressee = parts[0].partition("@")
    argument = parts[1].strip() if len(parts) > 1 else ""
    return token.lower(), addressee, argument


def decode_command(message: Message, bot_username: str = "") -> Command:
    text = (message.text or "").strip()
    token, addressee, argument = split_command(text)
    if addressee and bot_username and addressee.lower() != bot_username.lower():
        return Command(CommandKind.IGNORED)
    if token == "/start" and argument.startswith(DOWNLOAD_PREFIX):
        return Command(CommandKind.DOWNLOAD, argument[len(DOWNLOAD_PREFIX):])
    if token in SLASH_COMMANDS:
        kind = SLASH_COMMANDS[token]
        return Command(kind, argument if kind is CommandKind.DELETE else "")
    if text in LABEL_COMMANDS:
        return Command(LABEL_COMMANDS[text])
    if message.document:
        return Command(CommandKind.UPLOAD_DOCUMENT)
    if message.photo:
        return Command(CommandKind.UPLOAD_PHOTO)
    if message.video:
        return Command(CommandKind.UPLOAD_VIDEO)
    return Command(CommandKind.INVALID)


class Gateway:
    """Outbound Telegram calls, each tried once; failures are logged and reported as False."""

    def __init__(self, bot: Any) -> None:
        self.bot = bot

    async def _attempt(self, what: str, pending: Awaitable[Any], log_message: str) -> bool:
        try:
            await pending
        except TelegramError as exc:
            logger.warning("%s failed: %s", what, exc)
            return False
        logger.info(log_message)
        return True

    async def send_text(self, chat_id: int, text: str, log_message: str, **kwargs: Any) -> bool:
        return await self._attempt(
            "Message send",
            self.bot.send_message(chat_id=chat_id, text=text, **kwargs),
            log_message,
        )

    async def send_document(self, chat_id: int, file_id: str, caption: str, log_message: str) -> bool:
        return await self._attempt(
            "Document send",
            self.bot.send_document(chat_id=chat_id, document=file_id, caption=caption),
            log_message,
        )

    async def send_photo(self, chat_id: int, file_id: str, caption: str, log_message: str) -> bool:
        return await self._attempt(
            "Photo send",
            self.bot.send_photo(chat_id=chat_id, photo=file_id, caption=caption),
            log_message,
        )

    async def send_video(self, chat_id: int, file_id: str, caption: str, log_message: str) -> bool:
        return await self._attempt(
            "Video send",
            self.bot.send_video(chat_id=chat_id, video=file_id, caption=caption),
            log_message,
        )

    async def forward(self, to_chat_id: int, from_chat_id: int, message_id: int, log_message: str) -> bool:
        return await self._attempt(
            "Forward",
            self.bot.forward_message(chat_id=to_chat_id, from_chat_id=from_chat_id, message_id=message_id),
            log_message,
        )


class FileBot:
    def __init__(
        self,
        registry: FileRegistry,
        gateway: Gateway,
        bot_username: str = "",
        archive_chat_id: int = 0,
    ) -> None:
        self.registry = registry
        self.gateway = gateway
        self.bot_username = bot_username
        self.archive_chat_id = archive_chat_id
        self.handlers = {
            CommandKind.DOWNLOAD: self.download,
            CommandKind.HELP: self.show_help,
            CommandKind.LIST: self.list_files,
            CommandKind.DELETE: self.delete,
            CommandKind.UPLOAD_HINT: self.upload_hint,
            CommandKind.UPLOAD_DOCUMENT: self.save_document,
            CommandKind.UPLOAD_PHOTO: self.save_photo,
            CommandKind.UPLOAD_VIDEO: self.save_video,
            CommandKind.INVALID: self.invalid,
            CommandKind.IGNORED: self.ignore,
        }

    async def on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        msg = update.effective_message
        if not msg:
            return
        await self.handle_message(msg)

    async def handle_message(self, message: Message) -> None:
        command = decode_command(message, self.bot_username)
        await self.handlers[command.kind](message, command)

    def resolve_download(self, token: str) -> Optional[Tuple[str, str]]:
        # Generated names (photo_123) keep their underscores, so try the raw token first.
        return self.registry.find_by_stem(token) or self.registry.find_by_stem(decode_deep_link_name(token))

    async def download(self, message: Message, command: Command) -> None:
        chat_id = message.chat_id
        found = self.resolve_download(command.argument)
        if not found:
            await self.gateway.send_text(
                chat_id, FILE_NOT_FOUND_TEXT, f"Requested file not found: {command.argument}"
            )
            return
        file_id, name = found
        stem = file_stem(name)
        if stem.startswith(PHOTO_PREFIX):
            await self.gateway.send_photo(chat_id, file_id, stem, f"Photo sent: {stem}")
        elif stem.startswith(VIDEO_PREFIX):
            await self.gateway.send_video(chat_id, file_id, stem, f"Video sent: {stem}")
        else:
            await self.gateway.send_document(chat_id, file_id, stem, f"File sent: {stem}")

    async def show_help(self, message: Message, command: Command) -> None:
        chat_id = message.chat_id
        await self.gateway.send_text(chat_id, "Menu:", "Keyboard sent", reply_markup=main_keyboard())
        await self.gateway.send_text(chat_id, WELCOME_TEXT, "Welcome message sent")

    async def list_files(self, message: Message, command: Command) -> None:
        chat_id = message.chat_id
        if self.registry.is_empty():
            await self.gateway.send_text(chat_id, NO_FILES_TEXT, "Empty file list sent")
            return
        for text in render_file_list(self.registry.names(), self.bot_username):
            await self.gateway.send_text(
                chat_id,
                text,
                "File list sent",
                parse_mode=ParseMode.MARKDOWN_V2,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )

    async def delete(self, message: Message, command: Command) -> None:
        chat_id = message.chat_id
        replied = message.reply_to_message
        if replied and replied.document:
            name = document_name(replied.document, replied.date)
        else:
            name = command.argument
            if not name:
                await self.gateway.send_text(chat_id, DELETE_PROMPT_TEXT, "Asked user for a file name")
                return
        if self.registry.remove(name):
            await self.gateway.send_text(chat_id, f"File deleted: {name}", f"File deleted: {name}")
        else:
            await self.gateway.send_text(chat_id, DELETE_MISSING_TEXT, f"File to delete not found: {name}")

    async def upload_hint(self, message: Message, command: Command) -> None:
        await self.gateway.send_text(message.chat_id, UPLOAD_HINT_TEXT, "Upload hint sent")

    async def save_document(self, message: Message, command: Command) -> None:
        chat_id = message.chat_id
        document = message.document
        name = document_name(document, message.date)
        self.registry.put(name, document.file_id)
        if self.archive_chat_id:
            forwarded = await self.gateway.forward(
                self.archive_chat_id, chat_id, message.message_id, f"Forwarded to archive: {name}"
            )
            if not forwarded:
                await self.gateway.send_text(chat_id, SAVE_FAILED_TEXT, f"File save failed: {name}")
                return
        await self.gateway.send_text(chat_id, SAVED_TEXT, f"File saved: {name}")

    async def save_photo(self, message: Message, command: Command) -> None:
        # Telegram lists photo sizes smallest first.
        photo = message.photo[-1]
        name = f"{PHOTO_PREFIX}{int(time.time())}.jpg"
        self.registry.put(name, photo.file_id)
        await self.gateway.send_text(message.chat_id, PHOTO_SAVED_TEXT, f"Photo saved: {name}")

    async def save_video(self, message: Message, command: Command) -> None:
        name = f"{VIDEO_PREFIX}{int(time.time())}.mp4"
        self.registry.put(name, message.video.file_id)
        await self.gateway.send_text(message.chat_id, VIDEO_SAVED_TEXT, f"Video saved: {name}")

    async def invalid(self, message: Message, command: Command) -> None:
        await self.gateway.send_text(message.chat_id, INVALID_TEXT, "User sent an invalid command")

    async def ignore(self, message: Message, command: Command) -> None:
        logger.info("Ignoring command addressed to another bot: %s", message.text)


async def global_error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.exception("Unhandled error: %s", context.error, exc_info=context.error)


def build_application(config: BotConfig) -> Application:
    builder = Application.builder().token(config.bot_token).connect_timeout(CONNECT_TIMEOUT)
    if config.proxy_url:
        builder = builder.proxy(config.proxy_url).get_updates_proxy(config.proxy_url)
        logger.info("Proxy enabled: %s", config.proxy_url)
    else:
        logger.info("Proxy disabled")

    async def post_init(application: Application) -> None:
        bot = application.bot_data["filebot"]
        if not bot.bot_username:
            bot.bot_username = application.bot.username
        logger.info("Logged in as %s", application.bot.username)

    app = builder.post_init(post_init).build()
    registry = FileRegistry(RegistryStore(Path(config.cache_file_path)))
    filebot = FileBot(
        registry,
        Gateway(app.bot),
        bot_username=config.bot_username,
        archive_chat_id=config.private_chat_id,
    )
    app.bot_data["filebot"] = filebot
    app.add_handler(MessageHandler(filters.UpdateType.MESSAGE, filebot.on_message))
    app.add_error_handler(global_error_handler)
    return app


def main() -> None:
    config = load_config()

    # Python 3.14 no longer provides a default loop in main thread.
    # PTB 21.x still expects one when starting polling.
    try:
        asyncio.get_event_loop()
    except RuntimeError:
        asyncio.set_event_loop(asyncio.new_event_loop())

    app = build_application(config)
    logger.info("Bot %s starting...", BOT_NAME)
    app.run_polling(allowed_updates=[Update.MESSAGE], timeout=POLL_TIMEOUT)


if __name__ == "__main__":
    main()
