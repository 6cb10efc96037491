"""Abstract interface for the model-inference provider."""

from abc import ABC, abstractmethod
from typing import AsyncIterator

from toolchat.models import ModelEvent, ModelRequest


class InferenceProvider(ABC):
    """Produces the event stream of one model continuation step.

    The orchestrator owns the step loop: it calls ``stream`` once per step,
    executes any requested tools and calls again with the tool results
    appended to the request messages.
    """

    @abstractmethod
    def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        """Stream text, reasoning and tool-call events for one step.

        Implementations are async generators. Raising signals a provider
        failure and ends the turn.
        """
        pass
