"""Test the sending pipeline"""

import pytest

from peertransfer.crypto.engine import TAG_SIZE
from peertransfer.errors import TransferStateError
from peertransfer.network.protocol import FileChunkMessage, TransferStartMessage
from peertransfer.transfer.models import TransferStatus
from conftest import MessageLog


class TestStartTransfer:

    @pytest.mark.asyncio
    async def test_registers_pending_transfer(self, sender, make_file, crypto):
        content = b"0123456789"
        path = make_file(content)

        transfer_id = await sender.start_transfer(path, "peer-b")
        transfer = sender.registry.get(transfer_id)

        assert transfer.status == TransferStatus.PENDING
        assert transfer.file_name == "sample.bin"
        assert transfer.file_size == 10
        assert transfer.total_chunks == 3
        assert transfer.checksum == crypto.checksum(content)
        assert len(transfer.encryption_key) == 32

    @pytest.mark.asyncio
    async def test_fresh_key_per_transfer(self, sender, make_file):
        path = make_file(b"abc")
        first = await sender.start_transfer(path, "peer-b")
        second = await sender.start_transfer(path, "peer-b")

        assert first != second
        assert sender.registry.get(first).encryption_key != \
            sender.registry.get(second).encryption_key

    @pytest.mark.asyncio
    async def test_missing_file(self, sender, temp_dir):
        with pytest.raises(FileNotFoundError):
            await sender.start_transfer(temp_dir / "nope.bin", "peer-b")

    @pytest.mark.asyncio
    async def test_directory_rejected(self, sender, temp_dir):
        with pytest.raises(IsADirectoryError):
            await sender.start_transfer(temp_dir, "peer-b")


class TestSendChunks:

    @pytest.mark.asyncio
    async def test_ten_bytes_in_three_chunks(self, sender, make_file, recorder):
        """4 + 4 + 2 bytes, only the last one flagged"""
        path = make_file(b"0123456789")
        transfer_id = await sender.start_transfer(path, "peer-b", recorder.callbacks())
        log = MessageLog()

        await sender.send_chunks(transfer_id, log)

        decoded = log.decoded()
        assert isinstance(decoded[0], TransferStartMessage)
        assert decoded[0].total_chunks == 3
        assert decoded[0].chunk_size == 4

        chunks = decoded[1:]
        assert all(isinstance(c, FileChunkMessage) for c in chunks)
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert [len(c.encrypted_data) - TAG_SIZE for c in chunks] == [4, 4, 2]
        assert [c.is_last_chunk for c in chunks] == [False, False, True]

        assert len(recorder.completed) == 1
        assert recorder.completed[0].status == TransferStatus.COMPLETED
        assert recorder.completed[0].progress == 100.0
        assert transfer_id not in sender.registry

    @pytest.mark.asyncio
    async def test_chunks_decrypt_with_announced_key(self, sender, make_file, crypto):
        path = make_file(b"0123456789")
        transfer_id = await sender.start_transfer(path, "peer-b")
        log = MessageLog()
        await sender.send_chunks(transfer_id, log)

        start, *chunks = log.decoded()
        key = crypto.import_key(start.encryption_key)
        plain = b"".join(crypto.decrypt(c.encrypted_data, key, c.iv) for c in chunks)
        assert plain == b"0123456789"
        assert crypto.verify_checksum(plain, start.checksum)

    @pytest.mark.asyncio
    async def test_empty_file_sends_one_empty_chunk(self, sender, make_file):
        path = make_file(b"")
        transfer_id = await sender.start_transfer(path, "peer-b")
        log = MessageLog()
        await sender.send_chunks(transfer_id, log)

        chunks = log.decoded()[1:]
        assert len(chunks) == 1
        assert chunks[0].is_last_chunk is True
        assert len(chunks[0].encrypted_data) == TAG_SIZE

    @pytest.mark.asyncio
    async def test_progress_monotonic(self, sender, make_file, recorder):
        path = make_file(bytes(range(40)))
        transfer_id = await sender.start_transfer(path, "peer-b", recorder.callbacks())
        await sender.send_chunks(transfer_id, MessageLog())

        values = [t.progress for t in recorder.progress]
        assert len(values) == 10
        assert values == sorted(values)
        assert values[-1] == 100.0
        assert all(t.speed >= 0 for t in recorder.progress)

    @pytest.mark.asyncio
    async def test_async_send_function(self, sender, make_file):
        sent = []

        async def send(message):
            sent.append(message)
            return True

        path = make_file(b"0123456789")
        transfer_id = await sender.start_transfer(path, "peer-b")
        await sender.send_chunks(transfer_id, send)
        assert len(sent) == 4

    @pytest.mark.asyncio
    async def test_send_chunks_twice_rejected(self, sender, make_file):
        path = make_file(b"0123456789")
        transfer_id = await sender.start_transfer(path, "peer-b")
        sender.registry.start(transfer_id)

        with pytest.raises(TransferStateError):
            await sender.send_chunks(transfer_id, MessageLog())


class TestSendFailures:

    @pytest.mark.asyncio
    async def test_metadata_refused(self, sender, make_file, recorder):
        path = make_file(b"0123456789")
        transfer_id = await sender.start_transfer(path, "peer-b", recorder.callbacks())
        log = MessageLog(refuse_at=0)

        await sender.send_chunks(transfer_id, log)

        assert log.messages == []
        assert sender.registry.get(transfer_id).status == TransferStatus.FAILED
        assert recorder.errors[0][1] == "Failed to send transfer metadata"

    @pytest.mark.asyncio
    async def test_chunk_refused_stops_without_retry(self, sender, make_file, recorder):
        path = make_file(b"0123456789")
        transfer_id = await sender.start_transfer(path, "peer-b", recorder.callbacks())
        log = MessageLog(refuse_at=2)

        await sender.send_chunks(transfer_id, log)

        assert len(log.chunks) == 1
        transfer = sender.registry.get(transfer_id)
        assert transfer.status == TransferStatus.FAILED
        assert transfer.error == "Failed to send chunk 1"
        assert len(recorder.errors) == 1
        assert recorder.completed == []

    @pytest.mark.asyncio
    async def test_raising_send_function_counts_as_refusal(self, sender, make_file, recorder):
        def send(message):
            raise ConnectionResetError("gone")

        path = make_file(b"0123456789")
        transfer_id = await sender.start_transfer(path, "peer-b", recorder.callbacks())
        await sender.send_chunks(transfer_id, send)

        assert sender.registry.get(transfer_id).status == TransferStatus.FAILED


class TestPauseResume:

    @pytest.mark.asyncio
    async def test_pause_after_second_chunk(self, sender, make_file, recorder):
        """Chunks 3-5 stay unsent until resume re-enters the loop"""
        path = make_file(bytes(range(20)))
        callbacks = recorder.callbacks()

        def on_progress(transfer):
            recorder.progress.append(transfer)
            if transfer.chunks_done == 2:
                sender.pause(transfer.id)

        callbacks.on_progress = on_progress
        transfer_id = await sender.start_transfer(path, "peer-b", callbacks)
        log = MessageLog()

        await sender.send_chunks(transfer_id, log)

        assert [m['chunkIndex'] for m in log.chunks] == [0, 1]
        transfer = sender.registry.get(transfer_id)
        assert transfer.status == TransferStatus.PAUSED
        assert transfer.progress == 40.0
        assert recorder.completed == []

        await sender.resume(transfer_id, log)

        assert [m['chunkIndex'] for m in log.chunks] == [0, 1, 2, 3, 4]
        assert sum(1 for m in log.messages if m['type'] == 'transfer-start') == 1
        assert len(recorder.completed) == 1

    @pytest.mark.asyncio
    async def test_resume_while_loop_exits(self, sender, make_file, recorder, monkeypatch):
        """A resume arriving before the paused loop lets go is not lost"""
        path = make_file(bytes(range(20)))
        callbacks = recorder.callbacks()

        def on_progress(transfer):
            if transfer.chunks_done == 2 and transfer.status == TransferStatus.TRANSFERRING:
                sender.pause(transfer.id)

        callbacks.on_progress = on_progress
        transfer_id = await sender.start_transfer(path, "peer-b", callbacks)
        log = MessageLog()
        passes = []
        send_loop = sender._send_loop

        async def exiting_send_loop(tid, send_fn):
            passes.append(tid)
            await send_loop(tid, send_fn)
            if len(passes) == 1:
                assert sender.is_sending(tid)
                await sender.resume(tid, send_fn)

        monkeypatch.setattr(sender, "_send_loop", exiting_send_loop)

        await sender.send_chunks(transfer_id, log)

        assert len(passes) == 2
        assert [m['chunkIndex'] for m in log.chunks] == [0, 1, 2, 3, 4]
        assert len(recorder.completed) == 1
        assert not sender.is_sending(transfer_id)

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, sender, make_file):
        path = make_file(b"0123456789")
        transfer_id = await sender.start_transfer(path, "peer-b")
        with pytest.raises(TransferStateError):
            await sender.resume(transfer_id, MessageLog())

    @pytest.mark.asyncio
    async def test_cancel_stops_loop(self, sender, make_file, recorder):
        path = make_file(bytes(range(20)))
        callbacks = recorder.callbacks()

        def on_progress(transfer):
            if transfer.chunks_done == 1:
                sender.cancel(transfer.id)

        callbacks.on_progress = on_progress
        transfer_id = await sender.start_transfer(path, "peer-b", callbacks)
        log = MessageLog()

        await sender.send_chunks(transfer_id, log)

        assert len(log.chunks) == 1
        assert transfer_id not in sender.registry
        assert recorder.completed == []
        assert recorder.errors == []
