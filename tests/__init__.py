"""Test package for Mathmage.

Core modules (question generation, timers, combat progression) are tested
headlessly with a fake clock. The pygame shell is smoke-tested with SDL's
dummy video and audio drivers so no window opens. Run ``pytest`` from the
project root.
"""
