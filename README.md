# limaguest

This package holds the agent that runs inside a Lima-style Linux guest. It
also holds a few helpers that the host side uses.

The agent watches the guest for listening TCP ports. It reads
`/proc/net/tcp` and `/proc/net/tcp6`. It also reads the CNI port-forwarding
rules in the `iptables` NAT table. It reports what it finds over a small HTTP
API on a UNIX socket. While it runs, it checks the system clock against the
hardware real-time clock every 10 seconds. If the two differ by more than 2
seconds, it sets the system clock from the RTC.

## Installing

```
pip install limaguest
```

The package needs Python 3.10 or later. It uses only the standard library.

## Running the guest agent

Run the agent as root inside the guest:

```
lima-guestagent daemon --tick 3s
```

- `--tick` sets how often the agent polls for port changes. It takes a
  duration such as `3s`, `500ms` or `1m30s`, and defaults to `3s`. The agent
  refuses to start with a zero or negative tick.
- `--debug` turns on debug logging. You can give it before or after `daemon`.

On start, the agent does the following:

1. It turns on the kernel audit subsystem and listens for netfilter
   configuration changes. After a change, it re-reads `iptables` until no
   further change has come for 20 ticks. In between it reuses the last result.
2. It removes whatever exists at `/run/lima-guestagent.sock`.
3. It serves its API on that socket, with mode `0777`.

The API has two endpoints:

- `GET /v1/info` returns `{"localPorts": [{"ip": ..., "port": ...}, ...]}`.
  On failure it returns status 500 and `{"message": ...}`.
- `GET /v1/events` streams newline-delimited JSON events, one each time the
  set of ports changes. An event carries `time` and, when non-empty,
  `localPortsAdded`, `localPortsRemoved` and `errors`. The first event lists
  every open port as added.

Other paths return 404. Methods other than GET return 405.

## Talking to the agent

```python
from limaguest.client import GuestAgentClient

client = GuestAgentClient("/run/lima-guestagent.sock")
print(client.info().local_ports)
for event in client.events():
    print(event.local_ports_added, event.local_ports_removed)
```

If the agent answers with a status other than 200, `info()` and `events()`
raise `RuntimeError`.

To serve an agent from your own code, use `limaguest.server.GuestAgentServer`.
Give it a socket path and any object that has `info()` and `events(stop)`.
Call `serve_forever()`, and call `shutdown()` from another thread to stop it.

## Library modules

- `limaguest.api`: the wire types `IPPort`, `Info` and `Event`, with
  `to_dict()` and `from_dict()`.
- `limaguest.procnettcp`: `parse()` and `parse_address()` read the
  `/proc/net/tcp` format, which stores addresses little endian per 4 bytes.
  `parse_files()` reads both files on the local system and skips any that
  are missing.
- `limaguest.iptables`: `parse_ports_from_rules()` finds forwarded ports in
  the output of `iptables -t nat -S`. `get_ports()` runs `iptables` and
  returns only the TCP ports that accept a connection. It returns an empty
  list when `iptables` is not installed.
- `limaguest.timesync`: `get_rtc_time()` reads `/dev/rtc`.
  `set_system_time()` sets the system clock. `decode_rtc_time()` decodes a
  raw `struct rtc_time`.
- `limaguest.agent`: `Agent` puts the pieces above together.
  `compare_ports()` gives the ports added and removed between two lists.
- `limaguest.guessarg`: decides whether an argument is a template URL, an
  HTTP URL, a file URL or a YAML path. It derives an instance name from a URL
  or a YAML file name, for example `fedora.yaml` gives `fedora`.
  `validate_identifier()` checks instance names.
- `limaguest.downloader`: `download()` fetches a URL or copies a local file.
  - It can use a cache directory (`default_cache_dir()` gives one) and can
    check the result against an expected `Digest`. The digest can be sha256,
    sha384 or sha512.
  - If the target already exists, it is skipped.
  - An empty target with a cache directory means caching only.
  - The returned `Result` has a `Status` of `downloaded`, `skipped` or
    `used-cache`.
- `limaguest.editutil`: `open_editor()` opens `$EDITOR` on a buffer with a
  header above it. If `$EDITOR` is unset it tries `vim`, `vi`, `nano` and
  then `emacs`. It returns the edited content without the header, or `b""`
  if the file was saved empty. `generate_editor_warning_header()` quotes
  `default.yaml` and `override.yaml` from a configuration directory.
- `limaguest.cidata`: `setup_env()` merges the proxy environment for
  cloud-init and replaces loopback proxy hosts with the slirp gateway.
  `get_cert()` and `get_boot_cmds()` split certificates and boot scripts into
  lines. `disk_device_name_from_order()` names extra disks from `vdb`
  onwards. `validate_template_args()` checks a `TemplateArgs`.

## What this package does not do

- There is no host-side command-line tool here. Nothing creates, starts,
  stops, edits, lists or deletes virtual machine instances, and nothing
  opens a shell or copies files into one.
- `limaguest.cidata` prepares and validates values for cloud-init. It does
  not render cloud-init templates or build the data ISO image.
- The agent has no command that installs it as a system service. Set that
  up yourself if you need it.