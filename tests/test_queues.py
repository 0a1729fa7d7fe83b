from modbus_tool.services.scheduler import MetadataSequence, RequestQueues, WriteRequest


def test_remove_reference_uses_identity():
    queues = RequestQueues()
    keep = ["same contents"]
    drop = ["same contents"]

    queues.writes.append(WriteRequest(drop, 1, 40001, [1]))
    queues.metadata.append(MetadataSequence(drop, 1, 40001, 40002))
    queues.reads.extend([drop, keep, drop])

    assert queues.remove_reference(drop) == 2
    assert list(queues.reads) == [keep]
    assert queues.reads[0] is keep
    assert queues.writes[0].requester is None
    assert queues.metadata[0].requester is None


def test_clear_returns_metadata_sequences():
    queues = RequestQueues()
    sequence = MetadataSequence(None, 1, 1, 2)
    queues.metadata.append(sequence)
    queues.reads.append(object())
    queues.device_ids.append(3)

    assert queues.clear() == [sequence]
    assert queues.stats() == {"writes": 0, "metadata": 0, "reads": 0, "device_ids": 0}
