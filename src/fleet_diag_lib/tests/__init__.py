from .base_test import BaseTest, FakeRemoteAgent

__all__ = ["BaseTest", "FakeRemoteAgent"]
