"""
Outputs: what the speaker does about events.

Commentary turns events into text, the OutputArbiter serialises speech so
lines never overlap, and AudioRouting keeps the A2DP stream pointed at the
DAC.
"""
