# meshsub

Parts for a gossip-based publish/subscribe router. Each part works on its own and uses only the
standard library.

## Modules

### `meshsub.score_params`

This module has three dataclasses: `PeerScoreThresholds`, `TopicScoreParams` and
`PeerScoreParams`. Each has a `validate()` method. It raises `ScoreParamsError` (a `ValueError`)
when the configuration is inconsistent, and returns the object itself when the configuration is
valid.

- Durations are `datetime.timedelta` values.
- With `skip_atomic_validation=True`, a group of parameters left at zero is not checked.
- In that mode, `PeerScoreParams.validate()` also fills in a missing `app_specific_score` with a
  function that returns `0.0`.

Other functions in the module:

- `score_parameter_decay(decay)` returns the per-tick decay factor. It assumes a 1 s decay
  interval and a decay-to-zero of 0.01. For one hour it gives `0.9987216039048303`.
- `score_parameter_decay_with_base(decay, base, decay_to_zero)` does the same for your own
  interval and floor.
- `is_invalid_number(num)` is true for NaN and infinities.

### `meshsub.timecache`

`new_time_cache(ttl, strategy=Strategy.FIRST_SEEN, sweep_interval=60.0)` returns a cache of the
kind that `strategy` selects:

- `FirstSeenCache`: an entry expires a fixed time after it was first added.
- `LastSeenCache`: an entry's expiry moves forward on every `add` and every `has`.

The caches have these methods:

- `add(key)` returns `True` if the key was new.
- `has(key)` checks whether the key is present.
- `sweep(now=None)` removes entries that have expired.
- `done()` stops the background sweeper thread.

Durations can be given in seconds or as a `timedelta`. Each cache is also a context manager that
calls `done()` on exit.

### `meshsub.subscription_filter`

`SubOpts(topic_id, subscribe)` describes one subscription announcement.

`filter_subscriptions(subs, accept)` does three things:

- it keeps only the topics that `accept` allows;
- it merges repeated announcements for the same topic into one;
- it drops a topic when its announcements contradict each other.

The module has three filters:

- `AllowlistSubscriptionFilter(*topics)` allows an explicit set of topics.
- `RegexpSubscriptionFilter(pattern)` allows any topic the pattern matches anywhere in its name,
  so anchor the pattern with `^` and `$`.
- `LimitSubscriptionFilter(inner, limit)` raises `TooManySubscriptionsError` when one batch holds
  more than `limit` entries. Otherwise it hands the batch to `inner`.

Each filter has `can_subscribe(topic)` and `filter_incoming_subscriptions(peer, subs)`.

### `meshsub.subscription`

`Message` holds a message's topic, data, origin, sequence number, signature and key. It also
holds the local delivery details: `received_from`, `validator_data`, `local` and `id`.

`Subscription(topic, buffer_size=32, on_cancel=None)` is a bounded queue of messages:

- `deliver(msg)` queues a message. It returns `False` when the queue is full or closed.
- `next(timeout=None)` returns the next message. It raises `TimeoutError` when nothing arrives in
  time, and `SubscriptionClosed` once the subscription is closed and empty.
- `cancel()` calls `on_cancel`, or calls `close()` when there is no `on_cancel`.
- `close(error=None)` closes the subscription. Only the first call has any effect.
- Iterating over a subscription yields messages until it is closed.

### `meshsub.tracer`

`RejectReason` lists the reasons a message can be rejected.

`BasicTracer(lossy=False, buffer_size=65536)` buffers trace events:

- A lossy tracer drops events once more than `buffer_size` are waiting.
- Events traced after `close()` are ignored.

`JSONTracer(stream)` writes events to a text stream as newline-delimited JSON, from a background
thread:

- Events must be mappings. Byte strings are written as base64 and enums as their values.
- `close()` writes out the pending events and then closes the stream.

`open_json_tracer(path, mode="w")` opens a file and returns a `JSONTracer` for it. The mode `"w"`
truncates the file, `"a"` appends to it, and `"x"` requires that the file does not exist yet.

### `meshsub.tag_tracer`

`ConnManager(clock=time.monotonic)` keeps two kinds of state for peers:

- Protections, managed with `protect`, `unprotect` and `is_protected`.
- Decaying tags, created with `register_decaying_tag`:
  - `DecayingTag.bump` adds to a peer's value, bounded to `[0, cap]`.
  - Values fall by a fixed amount for each whole interval that passes.
  - `tag_value` and `has_tag` read a peer's tag.

`TagTracer(cmgr, direct=None, ...)` turns pubsub events into protections and tags:

- `add_peer` protects direct peers under `pubsub:<direct>`.
- `graft` protects a mesh peer under `topic_tag(topic)` (`pubsub:<topic>`), and `prune` removes
  that protection.
- `join` registers a `pubsub-deliveries:<topic>` tag for the topic, and `leave` removes it.
- `deliver_message` bumps the delivery tag of the peer that delivered the message first. It does
  the same for every peer that sent a duplicate while the message was still validating, as
  recorded by `validate_message` and `duplicate_message`.
- `reject_message` stops tracking a message that was rejected for a validation outcome.

### `meshsub.validation`

`Validation(deliver, *, msg_id, seen, verify_signature, tracers, local_peer, queue_size, throttle, workers)`
validates messages and passes each accepted message to `deliver`.

Validators:

- A validator is a callable `(src, msg)` that returns a `bool` or a `ValidationResult`
  (`ACCEPT`, `REJECT` or `IGNORE`).
- A validator that raises an exception, times out or returns anything else counts as `IGNORE`.
- `add_validator(topic, validate, timeout=None, throttle=0, inline=False)` registers a validator
  for one topic. It raises `ValueError` if the topic already has one.
- `add_default_validator(...)` adds a validator that applies to every topic.
- `remove_validator(topic)` removes a topic's validator. It raises `KeyError` if there is none.
- `get_validators(msg)` lists the validators that apply to a message.

Running messages through the pipeline:

- `push_local(msg)` validates synchronously. It raises `ValidationError` (with a `reason`) when
  the message is rejected, ignored or has a bad signature.
- `push(src, msg)` queues a received message for the worker threads. It returns `True` when the
  message needs no validation at all.
- `start()` and `stop()` run and end the workers. `Validation` is also a context manager that
  calls them.
- Every message id goes through the validators at most once. Signed messages are rejected unless
  `verify_signature` accepts them.

`make_validator(...)` builds a standalone `TopicValidator`.

## Example

```python
from datetime import timedelta

from meshsub.score_params import TopicScoreParams
from meshsub.subscription import Message, Subscription
from meshsub.subscription_filter import AllowlistSubscriptionFilter, SubOpts
from meshsub.timecache import Strategy, new_time_cache
from meshsub.validation import Validation, ValidationError

TopicScoreParams(skip_atomic_validation=True, topic_weight=1.0).validate()

allow = AllowlistSubscriptionFilter("blocks", "txs")
accepted = allow.filter_incoming_subscriptions(
    "peer-a", [SubOpts("blocks", True), SubOpts("other", True)]
)  # [SubOpts(topic_id='blocks', subscribe=True)]

with new_time_cache(timedelta(minutes=2), Strategy.LAST_SEEN) as seen:
    seen.add("msg-1")  # True
    seen.add("msg-1")  # False

sub = Subscription("blocks")
pipeline = Validation(sub.deliver, workers=1)
pipeline.add_validator("blocks", lambda src, msg: b"bad" not in msg.data)

pipeline.push_local(Message(topic="blocks", data=b"hello", from_peer="me", seqno=b"1"))
print(sub.next(timeout=1).data)  # b'hello'

try:
    pipeline.push_local(Message(topic="blocks", data=b"bad", from_peer="me", seqno=b"2"))
except ValidationError as err:
    print(err.reason)  # RejectReason.VALIDATION_FAILED

pipeline.stop()
```

## What this package does not do

This package has no router, no network transport and no peer connections. The parts above have
to be wired into a router that you supply.

It also does not provide:

- **Message signing.** There is no signing or signature-checking code. A signature verifier must
  be passed to `Validation` as `verify_signature`.
- **Peer scoring.** Scores are never computed; `score_params` only describes and validates the
  parameters.
- **Other trace outputs.** The only tracer that writes output is the JSON one.
- **A command-line program.**

## Installing and testing

```
pip install .
pip install ".[test]"
pytest
```