from datetime import timedelta

from rollout_controller.pause import PauseContext, get_pause_condition
from rollout_controller.rollout_types import PauseCondition, PauseReason, RolloutPause, RolloutStatus
from fakes import blue_green_rollout, canary_rollout


def test_added_pause_reason_starts_now_and_marks_controller_pause(clock):
    rollout = canary_rollout(steps=[{"pause": {}}])
    ctx = PauseContext(rollout)
    ctx.add_pause_condition(PauseReason.CANARY_PAUSE_STEP)

    status = RolloutStatus()
    ctx.calculate_pause_status(status)

    assert [c.reason for c in status.pause_conditions] == [PauseReason.CANARY_PAUSE_STEP]
    assert status.pause_conditions[0].start_time == clock()
    assert status.controller_pause is True


def test_existing_pause_keeps_its_start_time(clock):
    rollout = canary_rollout(steps=[{"pause": {}}])
    started = clock() - timedelta(minutes=5)
    rollout.status.pause_conditions = [PauseCondition(reason=PauseReason.CANARY_PAUSE_STEP, start_time=started)]
    rollout.status.controller_pause = True
    ctx = PauseContext(rollout)
    ctx.add_pause_condition(PauseReason.CANARY_PAUSE_STEP)

    status = RolloutStatus()
    ctx.calculate_pause_status(status)
    assert status.pause_conditions[0].start_time == started


def test_removed_reason_is_dropped(clock):
    rollout = canary_rollout()
    rollout.status.pause_conditions = [PauseCondition(reason=PauseReason.INCONCLUSIVE_ANALYSIS, start_time=clock())]
    ctx = PauseContext(rollout)
    ctx.remove_pause_condition(PauseReason.INCONCLUSIVE_ANALYSIS)

    status = RolloutStatus()
    ctx.calculate_pause_status(status)
    assert status.pause_conditions == []
    assert status.controller_pause is False


def test_abort_wins_and_keeps_original_timestamp(clock):
    rollout = canary_rollout()
    ctx = PauseContext(rollout)
    ctx.add_pause_condition(PauseReason.CANARY_PAUSE_STEP)
    ctx.add_abort("metric failed")

    status = RolloutStatus()
    ctx.calculate_pause_status(status)
    assert status.abort is True
    assert status.aborted_at == clock()
    assert status.pause_conditions == []
    assert ctx.is_aborted()

    rollout.status.abort = True
    rollout.status.aborted_at = clock() - timedelta(minutes=1)
    again = PauseContext(rollout)
    again.add_abort("still failing")
    status = RolloutStatus()
    again.calculate_pause_status(status)
    assert status.aborted_at == rollout.status.aborted_at


def test_persisted_abort_survives_until_removed():
    rollout = canary_rollout()
    rollout.status.abort = True
    ctx = PauseContext(rollout)
    status = RolloutStatus()
    ctx.calculate_pause_status(status)
    assert status.abort is True

    ctx.remove_abort()
    assert not ctx.is_aborted()
    status = RolloutStatus()
    ctx.calculate_pause_status(status)
    assert status.abort is False


def test_timed_canary_pause_completes_after_duration(clock):
    rollout = canary_rollout(steps=[{"pause": {"duration": "1m"}}])
    rollout.status.pause_conditions = [PauseCondition(reason=PauseReason.CANARY_PAUSE_STEP, start_time=clock())]
    ctx = PauseContext(rollout)
    pause = RolloutPause(duration="1m")
    assert not ctx.completed_canary_pause_step(pause)

    clock.advance(61)
    assert ctx.completed_canary_pause_step(pause)


def test_indefinite_canary_pause_completes_once_resumed():
    rollout = canary_rollout(steps=[{"pause": {}}])
    rollout.status.controller_pause = True
    assert PauseContext(rollout).completed_canary_pause_step(RolloutPause())

    rollout.status.controller_pause = False
    assert not PauseContext(rollout).completed_canary_pause_step(RolloutPause())


def test_blue_green_auto_promotion_seconds(clock):
    rollout = blue_green_rollout(autoPromotionSeconds=30)
    rollout.status.pause_conditions = [PauseCondition(reason=PauseReason.BLUE_GREEN_PAUSE, start_time=clock())]
    ctx = PauseContext(rollout)
    assert not ctx.completed_blue_green_pause()

    clock.advance(31)
    assert ctx.completed_blue_green_pause()
    assert get_pause_condition(rollout, PauseReason.BLUE_GREEN_PAUSE) is not None
