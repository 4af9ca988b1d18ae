import asyncio

from core.errors import ErrorKind
from core.monitor import CHECK_JOB_ID, DynamicMonitor, select_new_items
from core.result import Result
from core.risk_control import RiskControlTracker
from models.bilibili import Destination, DynamicItem, Subscription
from models.config import FilterConfig, NotifyConfig


def item(id_str, type_="DYNAMIC_TYPE_WORD", text=""):
    return DynamicItem(
        id_str=id_str,
        type=type_,
        modules={"module_dynamic": {"desc": {"text": text}}},
    )


FEED = [item("p5"), item("p4"), item("p3"), item("p2"), item("p1")]


class FakeApi:
    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    async def get_user_dynamics(self, uid, offset=None):
        self.calls.append(uid)
        return self.results.pop(0)


class FakeDispatcher:
    def __init__(self):
        self.sent = []

    async def send_notification(self, notification):
        self.sent.append(notification)
        return Result.ok()


class FakeScheduler:
    def __init__(self):
        self.jobs = {}
        self.started = False

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def add_interval(self, job_id, func, seconds, *, first_run_in=None):
        self.jobs[job_id] = (func, seconds, first_run_in)
        return FakeHandle(self, job_id)

    def remove_job(self, job_id):
        self.jobs.pop(job_id, None)


class FakeHandle:
    def __init__(self, scheduler, job_id):
        self.scheduler = scheduler
        self.job_id = job_id

    def cancel(self):
        self.scheduler.remove_job(self.job_id)


async def no_sleep(seconds):
    return None


TARGETS = (
    Destination(platform="aiocqhttp", channel_id="100", posts=True),
    Destination(platform="aiocqhttp", channel_id="200", posts=False, live=True),
)
SUB = Subscription(uid="42", name="UP", wants_posts=True, targets=TARGETS)


def make_monitor(results, filter_config=None):
    config = NotifyConfig(subscriptions=(SUB,), filter=filter_config or FilterConfig())
    api = FakeApi(results)
    dispatcher = FakeDispatcher()
    monitor = DynamicMonitor(
        api,
        dispatcher,
        config,
        scheduler=FakeScheduler(),
        tracker=RiskControlTracker("dynamic-test"),
        sleep=no_sleep,
    )
    return monitor, api, dispatcher


def ids(items):
    return [i.id_str for i in items]


def test_new_items_since_marker_are_chronological():
    assert ids(select_new_items(FEED, "p3")) == ["p4", "p5"]


def test_first_run_and_vanished_marker_only_yield_newest():
    assert ids(select_new_items(FEED, None)) == ["p5"]
    assert ids(select_new_items(FEED, "gone")) == ["p5"]


def test_nothing_new_when_marker_is_newest():
    assert select_new_items(FEED, "p5") == []
    assert select_new_items([], "p5") == []


def test_check_user_notifies_posts_targets_and_records_newest():
    async def runner():
        monitor, _, dispatcher = make_monitor([Result.ok(FEED[2:]), Result.ok(FEED)])

        await monitor.check_user(SUB)
        assert [n.url for n in dispatcher.sent] == ["https://t.bilibili.com/p3"]
        assert monitor.last_seen["42"] == "p3"

        await monitor.check_user(SUB)
        assert [n.url for n in dispatcher.sent[1:]] == [
            "https://t.bilibili.com/p4",
            "https://t.bilibili.com/p5",
        ]
        assert all(n.target.channel_id == "100" for n in dispatcher.sent)
        assert monitor.last_seen["42"] == "p5"

    asyncio.run(runner())


def test_filtered_dynamics_are_dropped_but_marker_advances():
    async def runner():
        feed = [item("p2", text="抽奖送礼"), item("p1")]
        monitor, _, dispatcher = make_monitor(
            [Result.ok([item("p1")]), Result.ok(feed)],
            FilterConfig(enable=True, keywords=("抽奖",)),
        )

        await monitor.check_user(SUB)
        await monitor.check_user(SUB)

        assert [n.url for n in dispatcher.sent] == ["https://t.bilibili.com/p1"]
        assert monitor.last_seen["42"] == "p2"

    asyncio.run(runner())


def test_fetch_failures_feed_the_risk_tracker():
    async def runner():
        failure = Result.fail("请求被风控 [错误码: -352]", code=-352, kind=ErrorKind.ABUSE_DETECTED)
        monitor, api, dispatcher = make_monitor([failure, failure, failure])

        for _ in range(3):
            await monitor.check_user(SUB)

        assert monitor.tracker.is_blocked() is True
        assert dispatcher.sent == []
        assert "42" not in monitor.last_seen

        # A blocked pass does not reach the API at all
        await monitor.check_for_updates()
        assert api.calls == ["42", "42", "42"]

    asyncio.run(runner())


def test_shutdown_failures_are_not_counted():
    async def runner():
        torn_down = Result.fail("closed", kind=ErrorKind.SCOPE_TORN_DOWN)
        monitor, _, _ = make_monitor([torn_down] * 3)

        for _ in range(3):
            await monitor.check_user(SUB)

        assert monitor.tracker.state.consecutive_failures == 0

    asyncio.run(runner())


def test_start_schedules_recurring_check_and_stop_cancels_it():
    monitor, _, _ = make_monitor([])

    monitor.start()
    func, seconds, first_run_in = monitor.scheduler.jobs[CHECK_JOB_ID]
    assert seconds == 120
    assert first_run_in == 5.0
    assert monitor.status()["has_timer"] is True

    monitor.stop()
    assert monitor.scheduler.jobs == {}
    assert monitor.status()["is_running"] is False


OTHER = Subscription(uid="43", name="UP2", wants_posts=True, targets=TARGETS)
THIRD = Subscription(uid="44", name="UP3", wants_posts=True, targets=TARGETS)


def test_pass_sleeps_only_between_users():
    async def runner():
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        config = NotifyConfig(subscriptions=(SUB, OTHER, THIRD))
        api = FakeApi([Result.ok([item("p1")])] * 3)
        monitor = DynamicMonitor(
            api,
            FakeDispatcher(),
            config,
            scheduler=FakeScheduler(),
            tracker=RiskControlTracker("dynamic-test"),
            delay_between_checks=1.0,
            sleep=record_sleep,
        )
        monitor.start()

        await monitor.check_for_updates()

        assert api.calls == ["42", "43", "44"]
        assert sleeps == [1.0, 1.0]

    asyncio.run(runner())


def test_pass_stops_when_monitor_is_stopped():
    async def runner():
        config = NotifyConfig(subscriptions=(SUB, OTHER))
        api = FakeApi([Result.ok([item("p1")]), Result.ok([item("q1")])])
        dispatcher = FakeDispatcher()
        monitor = DynamicMonitor(
            api,
            dispatcher,
            config,
            scheduler=FakeScheduler(),
            tracker=RiskControlTracker("dynamic-test"),
            sleep=no_sleep,
        )
        monitor.start()

        async def stop_between_users(seconds):
            monitor.stop()

        monitor._sleep = stop_between_users
        await monitor.check_for_updates()

        assert api.calls == ["42"]
        assert "43" not in monitor.last_seen

    asyncio.run(runner())
