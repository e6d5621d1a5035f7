from __future__ import annotations

# gh / API operations
GH_TIMEOUT_SECONDS = 60.0

# Local git operations (status, checkout)
GIT_TIMEOUT_SECONDS = 30.0

# Network-bound git operations (push)
GIT_NETWORK_TIMEOUT_SECONDS = 3 * 60.0

# Idempotent gh read retry policy
GH_READ_RETRY_ATTEMPTS = 3
GH_READ_RETRY_DELAY_SECONDS = 1.0

# Build-only step of a matrix cell
BUILD_ONLY_TIMEOUT_SECONDS = 720 * 60.0

# Prepare step (version bump, changelog, release branch)
PREPARE_TIMEOUT_SECONDS = 3 * 60 * 60.0

# Package publish
PUBLISH_TIMEOUT_SECONDS = 2 * 60 * 60.0

# Notifier HTTP calls
NOTIFY_TIMEOUT_SECONDS = 30.0

# Run slot polling (supersede / queue)
RUN_SLOT_POLL_SECONDS = 5.0

# Interactive debug session on failure
DEBUG_SESSION_TIMEOUT_SECONDS = 60 * 60.0
