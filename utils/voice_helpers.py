# -*- coding: utf-8 -*-
import logging
from typing import Optional

import discord

log = logging.getLogger('MusicBot.VoiceHelpers')


def member_voice_channel(member) -> Optional[discord.abc.Connectable]:
    """Returns the voice channel `member` is connected to, if any."""
    if not isinstance(member, discord.Member):
        return None
    voice = member.voice
    return voice.channel if voice and voice.channel else None


def is_channel_vacant(channel) -> bool:
    """True when no non-bot member is left in `channel`."""
    if channel is None:
        return False
    human_members = [m for m in channel.members if not m.bot]
    log.debug(f"ALONE CHECK (Chan: {channel.name}): {len(human_members)} human(s). Members: {[m.name for m in channel.members]}")
    return len(human_members) == 0


def is_bot_alone(vc: Optional[discord.VoiceClient]) -> bool:
    """Checks if the bot is the only non-bot user in its voice channel."""
    if not vc or not vc.is_connected() or not vc.channel:
        return False
    return is_channel_vacant(vc.channel)
