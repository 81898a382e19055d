from callbridge.conversation.state_machine import (
    ConversationStateMachine,
    Step,
    TransitionTrigger,
)

__all__ = [
    "ConversationStateMachine",
    "Step",
    "TransitionTrigger",
]
