"""Client-side services and server-side integrations."""
