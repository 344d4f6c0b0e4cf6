"""Constants used across ImmorTerm.

Internal values that are not user-configurable. Tunable behavior lives in
`immorterm.config.schema`.
"""

import re

MAIN_MODULE = "__main__"

# Registry schema
REGISTRY_VERSION = 3
REGISTRY_SAVE_DEBOUNCE_S = 0.05

# Workspace layout (relative to the workspace root)
VSCODE_DIR_NAME = ".vscode"
TERMINALS_DIR_NAME = "terminals"
LOGS_DIR_NAME = "logs"
PENDING_DIR_NAME = "pending"
REGISTRY_FILE_NAME = "registry.json"
MANIFEST_FILE_NAME = "restore-terminals.json"
WORKSPACE_CONFIG_FILE_NAME = "immorterm.yml"
MIGRATION_MARKER_FILE_NAME = ".immorterm-migrated"
BACKUP_DIR_PREFIX = "terminals.backup-"
LOG_SUFFIX = ".log"

# Spawner script referenced by manifest commands
SPAWNER_SCRIPT = ".vscode/terminals/tmux-auto"
LEGACY_SPAWNER_SCRIPT_NAME = "screen-auto"
MANIFEST_DEFAULT_DELAY_MS = 800
MANIFEST_WINDOW_ID_PATTERN = re.compile(r"(?:tmux|screen)-auto\s+(\d+-\w+)")

# Window ids
WINDOW_ID_PATTERN = re.compile(r"^\d+-[A-Za-z0-9]+$")
RAW_WINDOW_ID_PATTERN = re.compile(r"^\d+-[a-f0-9]{8}$")
DEFAULT_PROJECT_NAME = "workspace"

# tmux environment handshake for command-initiated renames
PENDING_RENAME_ENV = "IMMORTERM_PENDING_RENAME"

# Process tree
SHELL_PROCESS_NAMES = frozenset({"zsh", "bash", "sh", "fish", "dash", "ksh", "tcsh"})
ASSISTANT_PROCESS_NAMES = frozenset({"claude"})

# Assistant history (read-only, owned by the assistant CLI)
ASSISTANT_HOME = "~/.claude"
ASSISTANT_HISTORY_FILE = "history.jsonl"
ASSISTANT_PROJECTS_DIR = "projects"
ASSISTANT_RESUME_TEMPLATE = "claude --resume {conversation_id}"

# Messages that never identify a conversation
CONTROL_COMMANDS = ("/resume", "/status", "/clear", "/compact", "/exit", "/help")
TRIVIAL_MESSAGES = frozenset({"go on", "continue", "yes", "no", "ok", "okay", "thanks", "thank you"})

# Phrase extraction
PHRASE_WORDS = 3
PHRASE_MIN_WORD_LENGTH = 4
MAX_PHRASES_PER_MESSAGE = 5
MAX_PHRASES_TOTAL = 20
EXACT_MATCH_PREFIX_CHARS = 60
EXACT_MATCH_MIN_LENGTH = 20
EXACT_MATCH_RECENT = 10
RESPONSE_SAMPLE_SIZE = 3

# Consecutive transient failures before escalating from debug to warning
TRANSIENT_FAILURE_ESCALATION = 3

# Only the tail of a session log is scored
TRANSCRIPT_TAIL_BYTES = 2 * 1024 * 1024
