# cgtproxy

`cgtproxy` is a transparent network proxy manager for Linux. It watches the
cgroup v2 filesystem and, based on rules matching cgroup paths, sends the
traffic of each cgroup to a TPROXY server, drops it, or leaves it untouched.
Routing is done with an nftables table named `inet cgtproxy` and a policy
routing table whose rules and local routes the program adds and removes.

## Requirements

- Linux with cgroup v2 mounted (`/sys/fs/cgroup/unified` or `/sys/fs/cgroup`
  are tried when `cgroup-root` is `AUTO`)
- the `nft` and `ip` commands on `PATH`
- `CAP_NET_ADMIN` (usually: run as root)

## Installation

```sh
pip install .
```

## Usage

Start the daemon with the default configuration file
(`/etc/cgtproxy/config.yaml`, or `$CONFIGURATION_DIRECTORY/config.yaml` when
that variable is set):

```sh
cgtproxy
```

Use another configuration file:

```sh
cgtproxy --config ./config.yaml
```

Check the configuration and the required capabilities:

```sh
cgtproxy check
cgtproxy check config
cgtproxy check permission
```

`cgtproxy check` runs both checks. `check config` loads and validates the
configuration file (`--with-logger` lets it log while doing so);
`check permission` reads `/proc/self/status` and fails unless
`CAP_NET_ADMIN` is in the effective capability set. Failures are printed and
the command exits with status 1.

Other options of the daemon:

- `--reuse-netlink-socket[=BOOL]` (default true): reuse one nft connection
  object for all changes instead of making a new one each time.
- `--cpu-profile TEMPLATE`: where to write a call profile when
  `CGTPROXY_PROFILE` contains `cpu`; `{{.PID}}` is replaced by the process id.
  The file holds call counts and inclusive times per function.
- `--block-profile TEMPLATE`: accepted, but block profiling is not available;
  with `CGTPROXY_PROFILE=block` only a warning is logged.
- `--version`: prints `cgtproxy version dev`.

The daemon stops on `SIGINT` or `SIGTERM` and removes the nftables table,
the routes and the policy rules it created. If the default configuration file
is missing, a built-in configuration is used that leaves all traffic direct;
a missing file given with `--config` is an error.

## Configuration

```yaml
version: 1
cgroup-root: AUTO
route-table: 300
bypass:
  - 127.0.0.0/8
  - 192.168.0.0/16
  - ::1
tproxies:
  clash:
    port: 7893
    mark: 3000
    no-udp: false
    no-ipv6: false
    dns-hijack:
      ip: 127.0.0.1
      port: 53
      tcp: true
rules:
  - match: \/user.slice\/.*proxy.*
    tproxy: clash
  - match: \/system.slice\/.*
    direct: true
  - match: \/.*blocked.*
    drop: true
```

- `version`: must be `1`.
- `cgroup-root`: mount point of cgroup v2 (an existing directory), or `AUTO`
  to detect it.
- `bypass`: IPv4/IPv6 addresses or CIDRs whose traffic is never redirected.
- `tproxies`: TPROXY servers keyed by name. `port` and `mark` are required;
  `mark` must not collide with firewall marks already in use. `no-udp`
  redirects TCP only, `no-ipv6` redirects IPv4 only. `dns-hijack` sends
  UDP (and with `tcp: true` also TCP) traffic to port 53 to the given IPv4
  address and port; `ip` defaults to `127.0.0.1`.
- `rules`: checked in order; the first regular expression found (with
  `re.search`) in a cgroup's filesystem path decides whether its traffic goes
  to a TPROXY server (`tproxy`), is dropped (`drop`), or is passed directly
  (`direct`). Exactly one of the three must be set per rule.
- `route-table`: the routing table number used for redirected traffic;
  required.

Type errors raise `ConfigTypeError`, rule violations raise
`ConfigValidationError`, and a missing cgroup v2 mount raises
`CgroupRootNotFoundError`; all derive from `ConfigError`.

## Environment

- `CONFIGURATION_DIRECTORY`: directory holding the default `config.yaml`.
- `CGTPROXY_MONITOR_BUFFER_SIZE`: size of the filesystem event buffer
  (default 1024; invalid or non-positive values fall back to the default).
- `CGTPROXY_PROFILE`: comma-separated list; `cpu` enables the call profile.

## Library use

The pieces are usable on their own:

- `cgtproxy.config.load_config(content, logger)` parses and validates a
  configuration and returns a `Config`.
- `cgtproxy.nftman.NFTManager` creates and updates the nftables table
  (`init_structure`, `add_chain_and_rules_for_tproxies`, `add_routes`,
  `remove_routes`, `clear`, `release`); `cgtproxy.nftrules` holds the rule
  bodies it uses.
- `cgtproxy.connector.Connector` and `LastingConnector` hand out `NftConn`
  objects that queue statements and apply them with `nft -f -`.
- `cgtproxy.routeman.RouteManager` turns cgroup events into routes and sets
  up the policy routing through `IpRouting`.
- `cgtproxy.cgfsmon.CGroupFSMonitor` emits `CGroupEvents` batches for
  cgroups found at start-up and created or removed later.
- `cgtproxy.core.CGTProxy` runs the monitor and the route manager together;
  `cgtproxy.cli.build_cgtproxy` assembles all of them from a `Config`.