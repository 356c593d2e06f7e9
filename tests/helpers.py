"""Test helpers for the queue tests."""

import asyncio
from typing import Optional

from spritebatch.jobs import JobSubmission


class FakeAnimate:
    """Stand-in for the animate operation.

    Records every call, fails for prompts listed in `failures` and can
    hold each call open until `gate` is set.
    """

    def __init__(self, failures: Optional[dict] = None, gate: Optional[asyncio.Event] = None):
        self.calls = []
        self.failures = failures or {}
        self.gate = gate
        self.started = asyncio.Event()
        self.on_call = None

    async def __call__(self, params):
        self.calls.append(params)
        self.started.set()
        if self.on_call:
            self.on_call(params)
        if self.gate is not None:
            await self.gate.wait()
        prompt = params.get("motion_prompt")
        if prompt in self.failures:
            raise self.failures[prompt]
        return {
            "spritesheet_url": f"https://cdn.example.com/{prompt}.png",
            "individual_frame_urls": [],
        }


def submission_body(prompt="walk", image="https://cdn.example.com/hero.png", **settings):
    return {
        "image": image,
        "image_name": f"{prompt}.png",
        "settings": {"motion_prompt": prompt, **settings},
    }


def submission(prompt="walk", image="https://cdn.example.com/hero.png", **settings):
    return JobSubmission(**submission_body(prompt, image, **settings))
