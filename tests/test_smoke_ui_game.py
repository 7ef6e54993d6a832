from __future__ import annotations

import os


def test_ui_smoke_play_answer_and_back_to_menu(monkeypatch) -> None:
    # Headless SDL for CI.
    os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
    os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
    monkeypatch.setenv("MATHMAGE_SEED", "1234")

    import pygame

    from mathmage.app import run

    def inject(frame: int) -> None:
        # Main Menu -> Play, pick the first answer, click the second, then back out.
        if frame == 1:
            pygame.event.post(pygame.event.Event(pygame.KEYDOWN, {"key": pygame.K_RETURN, "unicode": ""}))
        elif frame == 3:
            pygame.event.post(pygame.event.Event(pygame.KEYDOWN, {"key": pygame.K_1, "unicode": "1"}))
        elif frame == 5:
            pygame.event.post(pygame.event.Event(pygame.MOUSEBUTTONDOWN, {"button": 1, "pos": (480, 500)}))
        elif frame == 8:
            pygame.event.post(pygame.event.Event(pygame.KEYDOWN, {"key": pygame.K_ESCAPE, "unicode": ""}))

    assert run(max_frames=12, event_injector=inject) == 0
