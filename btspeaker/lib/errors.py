# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""Exception types shared across BT Speaker services."""


class BtSpeakerError(Exception):
    """Base class for all BT Speaker errors."""


class SpeechError(BtSpeakerError):
    """A speech engine could not render an utterance."""


class CommentaryError(BtSpeakerError):
    """The commentary backend failed or returned nothing usable."""
