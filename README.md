# mimiclaw

The building blocks of a small personal AI assistant. The assistant takes
messages from chat channels, runs a tool-use loop against a large language
model, and sends the answer back on the same channel.

## What is inside

- `mimiclaw.bus`: `MessageBus` holds two bounded queues. The inbound queue
  carries messages towards the agent, and the outbound queue carries replies
  back to the channels. A push to a full queue raises `BusFullError`. A pop
  that times out raises `BusTimeoutError`. Each `Message` carries a `Channel`
  (telegram, websocket, cli or system), a chat id and its text.
- `mimiclaw.cron`: `CronService` holds scheduled jobs (`CronJob`) and keeps
  them in a JSON file. A job is either recurring (`CronKind.EVERY`, every
  `interval_s` seconds) or one-shot (`CronKind.AT`, at a Unix timestamp).
  When a job is due, its message goes into the inbound queue.
  `sanitize_destination` makes sure a job always has a usable channel and
  chat id. Adding a job beyond the limit raises `CronFullError`. Removing an
  unknown id raises `JobNotFoundError`.
- `mimiclaw.heartbeat`: `Heartbeat` checks a task file at a fixed interval.
  If the file holds anything actionable, `Heartbeat` asks the agent to look
  at it. Headers, blank lines and ticked checkboxes do not count as
  actionable.
- `mimiclaw.multi_button`: `Button` and `ButtonGroup` form a debounced
  button state machine. It turns level samples into `PressEvent` values:
  press, release, single click, double click, long press.
- `mimiclaw.context_builder`: `build_system_prompt` assembles the system
  prompt from the personality file, the user-info file, long-term memory,
  recent notes and a summary of the skills. `build_messages` appends a user
  turn to a JSON history.
- `mimiclaw.llm_payload`: builds request bodies and parses responses for
  Anthropic-style and OpenAI-style chat APIs, including tool calls.
- `mimiclaw.llm_client`: `LLMClient` sends those requests over HTTP. It keeps
  the API key, model and provider in a settings file.
- `mimiclaw.ws_server`: `WebSocketGateway` lets WebSocket clients talk to the
  agent with small JSON frames.
- `mimiclaw.agent`: `Agent` runs the loop itself. It builds the prompt,
  loads the session history, calls the model, runs the requested tools,
  stores the final exchange and queues the reply.

## WebSocket protocol

A client sends:

```json
{"type": "message", "content": "hello", "chat_id": "ws_client1"}
```

It receives:

```json
{"type": "response", "content": "Hi!", "chat_id": "ws_client1"}
```

If `chat_id` is left out, the gateway uses the id it gave the connection.

## Example

```python
from mimiclaw.bus import Channel, Message, MessageBus
from mimiclaw.cron import CronJob, CronKind, CronService
from mimiclaw.llm_client import LLMClient

bus = MessageBus(maxsize=8)

cron = CronService(path="cron.json", bus=bus)
cron.load()
cron.add_job(
    CronJob(
        name="stretch",
        kind=CronKind.EVERY,
        interval_s=3600,
        message="Remind me to stretch.",
        channel=Channel.SYSTEM,
    )
)

llm = LLMClient(api_key="placeholder", provider="anthropic")
reply = llm.chat("You are a helpful assistant.", '[{"role":"user","content":"hi"}]')
print(reply)
```

To run the complete assistant, wire the bus, an `LLMClient`, a tool executor
and a `SessionStore` into an `Agent`. Then call `Agent.run` with a
`threading.Event` that stops it.