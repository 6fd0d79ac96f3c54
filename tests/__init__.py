"""Test package for the Reaction Trainer.

Engine tests drive the state machine with a fake clock and never wait in
real time. UI tests run headlessly using pygame's dummy video driver to
avoid opening real windows. To run these tests, execute ``pytest`` from the
project root.
"""
