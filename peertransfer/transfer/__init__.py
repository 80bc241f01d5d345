from .models import (
    Transfer, TransferStatus, TransferDirection, TransferCallbacks, generate_transfer_id
)
from .state import TransferStateMachine
from .registry import TransferRegistry
from .sender import SenderPipeline
from .receiver import ReceiverPipeline, MemorySink, DirectorySink
from .service import FileTransferService

__all__ = [
    'Transfer',
    'TransferStatus',
    'TransferDirection',
    'TransferCallbacks',
    'generate_transfer_id',
    'TransferStateMachine',
    'TransferRegistry',
    'SenderPipeline',
    'ReceiverPipeline',
    'MemorySink',
    'DirectorySink',
    'FileTransferService'
]
