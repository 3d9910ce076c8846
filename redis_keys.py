REDIS_USERS_KEY = "room:users:{slug}" # room id - set of connection IDs
REDIS_ROOM_CHANNEL = "room:channel:{slug}" # room id - pub/sub channel name
REDIS_CONN_KEY = "conn:{connection_id}" # connection id - participant metadata
REDIS_ROOMS_KEY = "rooms:active" # set of room ids with at least one member
REDIS_INSTANCE_KEY = "relay:instance:{instance_id}" # relay instance id - heartbeat, expires when the relay dies

# **Example `conn:{connection_id}` hash fields**
# - `room_id` = room currently joined
# - `display_name` = name supplied with the join request
# - `joined_at` = ISO timestamp of first admission to `room_id`
# - `instance_id` = relay instance holding the socket
