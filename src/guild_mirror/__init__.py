"""
Guild mirror: incrementally copies one Discord guild's members, text
channels, messages, reactions and mentions into a local SQLite file.

All Discord API access goes through ``DiscordRestApi``, which only permits
an explicit allowlist of GET routes.  The mirror is append-friendly: rows are
upserted or inserted-or-ignored, never deleted.
"""
