REDIS_SESSION_KEY = "session:meta:{session_id}" # session id - session metadata hash
REDIS_SESSION_CHANNEL = "session:channel:{session_id}" # session id - pub/sub channel name
REDIS_SESSION_CHANNEL_PATTERN = "session:channel:*"

# **Example `session:meta:{id}` hash fields**
# - `session_id` = `{sessionId}`
# - `title`, `description`, `language`
# - `host_id` = user id supplied by the identity gateway
# - `max_participants` = integer
# - `status` = active | paused | ended
# - `created_at`, `updated_at`, `expires_at` = ISO timestamps (key also carries a TTL)
