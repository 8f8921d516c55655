from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from askgate.domain.conversation import AskOptions, ConversationContext
from askgate.domain.events import AskResult, ProviderEvent
from askgate.domain.models import ProviderId


class ProviderAdapter(ABC):
    provider: ProviderId

    @abstractmethod
    async def ask(self, context: ConversationContext, options: AskOptions) -> AskResult:
        raise NotImplementedError

    @abstractmethod
    async def ask_stream(self, context: ConversationContext, options: AskOptions) -> AsyncIterator[ProviderEvent]:
        """Yield canonical events in production order.

        Failures are raised as ``ProviderError``. Cancelling the consuming task
        releases the underlying connection.
        """
        raise NotImplementedError
