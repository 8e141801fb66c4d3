from relaybot.inbox import claim_queue_messages, send_queue_message


def test_claim_is_fifo_and_consumes(session_factory):
    ids = [send_queue_message(session_factory, "controller", "pool-a", "EXECUTE_TASK", {"n": i}) for i in range(3)]
    send_queue_message(session_factory, "controller", "pool-b", "EXECUTE_TASK", {"n": 99})

    first = claim_queue_messages(session_factory, "pool-a", 2)
    assert [m["id"] for m in first] == ids[:2]
    assert [m["payload"]["n"] for m in first] == [0, 1]

    rest = claim_queue_messages(session_factory, "pool-a", 10)
    assert [m["id"] for m in rest] == ids[2:]
    assert claim_queue_messages(session_factory, "pool-a", 10) == []
    assert len(claim_queue_messages(session_factory, "pool-b", 10)) == 1


def test_type_filters(session_factory):
    send_queue_message(session_factory, "controller", "pool-a", "EXECUTE_TASK", {"taskId": "t1"})
    send_queue_message(session_factory, "controller", "pool-a", "CANCEL_TASK", {"taskId": "t0"})

    control = claim_queue_messages(session_factory, "pool-a", 10, exclude_types=["EXECUTE_TASK"])
    assert [m["type"] for m in control] == ["CANCEL_TASK"]

    work = claim_queue_messages(session_factory, "pool-a", 10, include_types=["EXECUTE_TASK"])
    assert [m["payload"]["taskId"] for m in work] == ["t1"]


def test_zero_limit_claims_nothing(session_factory):
    send_queue_message(session_factory, "controller", "pool-a", "EXECUTE_TASK", {})
    assert claim_queue_messages(session_factory, "pool-a", 0) == []
    assert len(claim_queue_messages(session_factory, "pool-a", 1)) == 1
