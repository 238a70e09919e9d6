from send_scheduler.prometheus import SendMetrics


def test_send_metrics_counters_and_gauge():
    metrics = SendMetrics()

    metrics.inc_sent("inst-1")
    metrics.inc_failed(None)
    metrics.inc_rescheduled("inst-2")
    metrics.inc_skipped("")
    metrics.inc_conflict("inst-1")
    metrics.inc_tick("success")
    metrics.set_pending(3)

    output = metrics.generate_latest()
    assert b'snd_sent_total{instance="inst-1"} 1.0' in output
    assert b'snd_failed_total{instance="unknown"} 1.0' in output
    assert b'snd_skipped_total{instance="unknown"} 1.0' in output
    assert b'snd_ticks_total{status="success"} 1.0' in output
    assert b"snd_pending_items 3.0" in output


def test_registries_are_isolated():
    first = SendMetrics()
    second = SendMetrics()
    first.inc_sent("inst-1")
    assert b'snd_sent_total{instance="inst-1"}' not in second.generate_latest()
