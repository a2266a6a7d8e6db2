"""
Node and edge types for graphs built from the mirror.

The mirror itself never builds a graph.  This module fixes the address
scheme and default weights a downstream graph builder uses, so that mirrored
rows can be named consistently: every address is ``NODE_PREFIX`` (or
``EDGE_PREFIX``), then an entity kind, then the entity's local id parts.

Everything here is constructed once at import and is immutable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from guild_mirror.models import Reaction, Snowflake, encode_emoji

Address = Tuple[str, ...]

NODE_PREFIX: Address = ("sourcecred", "discord")
EDGE_PREFIX: Address = ("sourcecred", "discord")


@dataclass(frozen=True)
class EdgeWeight:
    forwards: float
    backwards: float


@dataclass(frozen=True)
class NodeType:
    name: str
    plural_name: str
    prefix: Address
    default_weight: float
    description: str


@dataclass(frozen=True)
class EdgeType:
    forward_name: str
    backward_name: str
    prefix: Address
    default_weight: EdgeWeight
    description: str


@dataclass(frozen=True)
class Declaration:
    name: str
    node_prefix: Address
    edge_prefix: Address
    node_types: Tuple[NodeType, ...]
    edge_types: Tuple[EdgeType, ...]
    user_types: Tuple[NodeType, ...]


MEMBER_NODE_TYPE = NodeType(
    name="Member",
    plural_name="Members",
    prefix=NODE_PREFIX + ("MEMBER",),
    default_weight=0,
    description="A member of the Discord server",
)

MESSAGE_NODE_TYPE = NodeType(
    name="Message",
    plural_name="Messages",
    prefix=NODE_PREFIX + ("MESSAGE",),
    default_weight=0,
    description="A Discord message, posted in a particular channel",
)

REACTION_NODE_TYPE = NodeType(
    name="Reaction",
    plural_name="Reactions",
    prefix=NODE_PREFIX + ("REACTION",),
    default_weight=1,
    description="A reaction by some user, directed at some message",
)

AUTHORS_MESSAGE_EDGE_TYPE = EdgeType(
    forward_name="authors message",
    backward_name="message is authored by",
    prefix=EDGE_PREFIX + ("AUTHORS", "MESSAGE"),
    default_weight=EdgeWeight(forwards=1 / 4, backwards=1),
    description="Connects an author to a message they've created.",
)

ADDS_REACTION_EDGE_TYPE = EdgeType(
    forward_name="adds reaction",
    backward_name="reaction added by",
    prefix=EDGE_PREFIX + ("ADDS_REACTION",),
    default_weight=EdgeWeight(forwards=1, backwards=1 / 16),
    description="Connects a member to a reaction that they added.",
)

REACTS_TO_EDGE_TYPE = EdgeType(
    forward_name="reacts to",
    backward_name="is reacted to by",
    prefix=EDGE_PREFIX + ("REACTS_TO",),
    default_weight=EdgeWeight(forwards=1, backwards=1 / 16),
    description="Connects a reaction to a message that it reacts to.",
)

MENTIONS_EDGE_TYPE = EdgeType(
    forward_name="mentions",
    backward_name="is mentioned by",
    prefix=EDGE_PREFIX + ("MENTIONS",),
    default_weight=EdgeWeight(forwards=1, backwards=1 / 16),
    description="Connects a message to the member being mentioned.",
)

DECLARATION = Declaration(
    name="Discord",
    node_prefix=NODE_PREFIX,
    edge_prefix=EDGE_PREFIX,
    node_types=(MEMBER_NODE_TYPE, MESSAGE_NODE_TYPE, REACTION_NODE_TYPE),
    edge_types=(
        AUTHORS_MESSAGE_EDGE_TYPE,
        ADDS_REACTION_EDGE_TYPE,
        REACTS_TO_EDGE_TYPE,
        MENTIONS_EDGE_TYPE,
    ),
    user_types=(MEMBER_NODE_TYPE,),
)


def node_type(name: str) -> NodeType:
    """Look up a node type by its singular name (e.g. ``"Member"``)."""
    for candidate in DECLARATION.node_types:
        if candidate.name == name:
            return candidate
    raise KeyError(f"Unknown node type: {name}")


def edge_type(forward_name: str) -> EdgeType:
    """Look up an edge type by its forward name (e.g. ``"reacts to"``)."""
    for candidate in DECLARATION.edge_types:
        if candidate.forward_name == forward_name:
            return candidate
    raise KeyError(f"Unknown edge type: {forward_name}")


# ---------------------------------------------------------------------------
# Node addresses
# ---------------------------------------------------------------------------


def member_address(user_id: Snowflake) -> Address:
    return MEMBER_NODE_TYPE.prefix + (user_id,)


def message_address(channel_id: Snowflake, message_id: Snowflake) -> Address:
    return MESSAGE_NODE_TYPE.prefix + (channel_id, message_id)


def reaction_address(reaction: Reaction) -> Address:
    return REACTION_NODE_TYPE.prefix + (
        encode_emoji(reaction.emoji),
        reaction.author_id,
        reaction.channel_id,
        reaction.message_id,
    )


# ---------------------------------------------------------------------------
# Edge addresses
# ---------------------------------------------------------------------------


def authors_message_address(
    author_id: Snowflake, channel_id: Snowflake, message_id: Snowflake
) -> Address:
    return AUTHORS_MESSAGE_EDGE_TYPE.prefix + (author_id, channel_id, message_id)


def adds_reaction_address(reaction: Reaction) -> Address:
    return ADDS_REACTION_EDGE_TYPE.prefix + reaction_address(reaction)[
        len(REACTION_NODE_TYPE.prefix):
    ]


def reacts_to_address(reaction: Reaction) -> Address:
    return REACTS_TO_EDGE_TYPE.prefix + reaction_address(reaction)[
        len(REACTION_NODE_TYPE.prefix):
    ]


def mentions_address(
    channel_id: Snowflake, message_id: Snowflake, user_id: Snowflake
) -> Address:
    return MENTIONS_EDGE_TYPE.prefix + (channel_id, message_id, user_id)
