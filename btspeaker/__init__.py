"""
BT Speaker: a Bluetooth speaker that watches what you play and has opinions.

Sources report what the connected phone is doing, the reconciler turns that
into one clean stream of track / playback events, and the outputs comment on
it out loud.
"""

__version__ = "1.0.0"
