"""
Endpoints, timeouts and protocol constants for the DeskAgent engine.
"""

# App identity (used in MCP clientInfo and config paths)
APP_NAME = "DeskAgent"
APP_VERSION = "1.0.0"

# Config files live in ~/.config/DeskAgent/
PROFILES_FILE = "profiles.json"
MCP_CONFIG_FILE = "mcp.json"
CONVERSATIONS_DIR = "conversations"
TOOL_LOG_FILE = "tool_calls.log"

# Default endpoints per backend kind
OPENAI_ENDPOINT_DEFAULT = "https://api.openai.com/v1"
ANTHROPIC_ENDPOINT_DEFAULT = "https://api.anthropic.com/v1/messages"
OLLAMA_ENDPOINT_DEFAULT = "http://localhost:11434"
GEMINI_ENDPOINT_DEFAULT = "https://generativelanguage.googleapis.com/v1beta"

API_CHAT_COMPLETIONS = "/chat/completions"
OLLAMA_CHAT = "/api/chat"
ANTHROPIC_VERSION = "2023-06-01"
AZURE_API_VERSION = "2024-06-01"

# Seconds
API_TIMEOUT = 120  # Max silence between two stream chunks
API_CONNECT_TIMEOUT = 15

# Default generation settings
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048
ANTHROPIC_MAX_TOKENS_DEFAULT = 4096  # Anthropic requires max_tokens

# Context windows by backend when the profile does not set one
CONTEXT_WINDOW_DEFAULTS = {
    "openai": 128000,
    "azure": 128000,
    "anthropic": 200000,
    "gemini": 1000000,
    "ollama": 32000,
    "custom": 128000,
}
CONTEXT_WARN_RATIO = 0.85  # Warn when usage exceeds 85% of the window

# History compaction
SUMMARIZE_THRESHOLD = 0.7  # Summarize older history above 70% of the window
KEEP_RECENT_PAIRS = 5  # Recent user/assistant exchanges sent verbatim
SUMMARY_TEMPERATURE = 0.1
SUMMARY_MESSAGE_CHARS = 2200  # Per-message cap in the summarizer input
SUMMARY_INPUT_CHARS = 50000

# Optional system prompt prepended to new conversations
SYSTEM_PROMPT_FILE = "system_prompt.md"

# Agentic loop
MAX_TOOL_ROUNDS = 8

# MCP tool servers
MCP_PROTOCOL_VERSION = "2024-11-05"
HANDSHAKE_TIMEOUT = 30  # initialize + tools/list
TOOL_CALL_TIMEOUT = 60  # per tools/call
PROCESS_STOP_TIMEOUT = 5  # terminate -> kill grace period
TOOL_NAME_MAX_LEN = 64
STDIO_LINE_LIMIT = 16 * 1024 * 1024  # Max bytes in one JSON-RPC line
