"""
Default configurations and shared constants for the BugTracker cog.
This module defines all default configuration values used across different modules.
"""

# Config identifier for Config.get_conf
CONFIG_IDENTIFIER = 908039527271104515

# Default global configuration
DEFAULT_GLOBAL_CONFIG = {
    # Database settings
    "db_url": None,  # SQLAlchemy async URL, None = sqlite file in the cog data path

    # AI collaborator settings
    "anthropic_api_key": None,  # None disables AI-assisted matching
    "ai_model": "claude-3-haiku-20240307",
    "ai_timeout": 20,  # Seconds per AI request

    # History scan settings
    "scan_on_startup": True,  # Whether to backfill monitored channels on startup
    "scan_since_date": None,  # ISO date, used when a channel has no saved position
    "scan_max_messages": None,  # Cap per channel scan, None = unbounded
    "backfill_ambient": False,  # Whether history scans ask the AI about plain messages

    # Reaction sync settings
    "reaction_sync_minutes": 30,  # Interval of the open-bug reaction sweep

    # Channels used when no monitored channel has been added yet
    "fallback_channel_ids": [],
}

# History scan limits
HISTORY_BATCH_SIZE = 100  # Discord page size limit
ADD_CHANNEL_SCAN_LIMIT = 300  # Messages scanned when a channel is first added
SCAN_PROGRESS_EVERY = 500  # Log progress every N scanned messages

# Ambient classification limits
RECENT_CONTEXT_CAPACITY = 10  # Messages remembered per channel
AMBIENT_CANDIDATE_LIMIT = 5  # Open bugs offered to the classifier

# Completion heuristics
WORD_OVERLAP_THRESHOLD = 0.7
MIN_TOKEN_LENGTH = 3

# recentbugs command limits
RECENT_BUGS_DEFAULT = 5
RECENT_BUGS_MAX = 10
RECENT_BUGS_EMBEDS = 5
