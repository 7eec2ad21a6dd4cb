# ngmonitor

Building blocks for a service that watches a distributed database cluster
made of TiDB, PD, TiKV, TiFlash and TiCDC instances. The package provides
the following pieces:

- It keeps track of the cluster's components and hands the latest set of
  components to subscribers.
- It collects pprof profiles from those components on a shared, aligned tick.
  The profiles are stored per target in SQLite, and data older than the
  retention period is removed.
- It answers queries over the stored profiles. The queries cover group
  summaries, per-target details, single profile views, zip downloads and size
  estimates.
- It maintains PD and etcd clients, and publishes this server's own address
  and liveness to etcd.

## Installation

```
pip install ngmonitor
```

To run the tests:

```
pip install "ngmonitor[test]"
pytest
```

## Modules

| Module | What it holds |
| --- | --- |
| `ngmonitor.meta` | Profile kind and format constants, `ProfileStatus`, `ProfileTarget`, `TargetInfo`, `BasicQueryParam`, `ProfileList`, `StatusCounter`, `ContinueProfilingConfig` |
| `ngmonitor.ticker` | `Ticker`, which fires at wall-clock multiples of its interval, and `TickerSubscription` |
| `ngmonitor.topology` | `Component`, `TopologyDiscoverer`, `parse_ticdc_components` |
| `ngmonitor.store` | `ProfileStorage`, `StoreClosedError`, `QueryRangeTooLargeError` |
| `ngmonitor.domain` | `PDConfig`, `PDClient`, `ClientMaintainer`, `Domain`, `create_pd_client`, `create_clients_with_retry` |
| `ngmonitor.scrape` | `PprofProfilingConfig`, `Target`, `ProfileScraper`, `ScrapeSuite` |
| `ngmonitor.scrape_manager` | `ScrapeManager`, `go_app_profiling_config`, `non_go_app_profiling_config` |
| `ngmonitor.api` | `ProfilingApi`, the response records (`GroupProfiles`, `GroupProfileDetail`, `ProfileDetail`, `ComponentNum`, `EstimateSize`), `build_query_param`, `target_from_query`, `profile_estimate_size`, `ApiError` |
| `ngmonitor.conprof` | `ContinuousProfiling`, which opens a `ProfileStorage` and starts a `ScrapeManager` on it |
| `ngmonitor.syncer` | `ServerInfo`, `server_info_from_address`, `put_kv_with_retry`, `TopologySyncer` |

## Profile status

Several profiles are usually taken at the same moment. `StatusCounter` folds
their statuses into one:

```python
from ngmonitor.meta import ProfileStatus, StatusCounter

counter = StatusCounter()
counter.add_status(ProfileStatus.FINISHED)
counter.add_status(ProfileStatus.FAILED)
print(counter.final_status())   # finished_with_error
```

The result is chosen by the first rule that applies:

1. If every profile finished, the result is `finished`.
2. If every profile failed, the result is `failed`.
3. If any profile is still running, the result is `running`.
4. Otherwise the result is `finished_with_error`.

## Scraping

`ScrapeManager` reads getters from two queues:

- `topology_updates` yields the latest list of `Component`s.
- `config_updates` yields the latest `ContinueProfilingConfig`.

Each update starts or stops `ScrapeSuite`s, one for each profile kind of each
component:

- TiDB, PD and TiCDC get the heap, goroutine, mutex and CPU profile kinds.
- Other components get the CPU profile only.
- TiFlash is skipped.

The following changes restart every suite:

- switching profiling on or off;
- changing `profile_seconds`.

Changing `interval_seconds` resets the shared `Ticker`.

## Query API

`ProfilingApi.handle(path, query)` answers these paths. A path outside this
list gets a 404 response.

| Path | Parameters |
| --- | --- |
| `/group_profiles` | `begin_time`, `end_time`, optional `limit` |
| `/group_profile/detail` | `ts`, optional `limit` |
| `/single_profile/view` | `ts`, `profile_type`, `component`, `address`, optional `data_format` (`svg` or `protobuf`) |
| `/download` | `ts`, or `begin_time` and `end_time`; optionally one target given by `profile_type`, `component` and `address` |
| `/components` | none |
| `/estimate_size` | none |

The methods behind the paths (`group_profiles`, `download` and so on) raise
`ApiError` when a parameter is missing or malformed. The error carries a
message such as `need param begin_time` or
`invalid param data_format value unknown, expected: svg, protobuf`. Any error
inside `handle` is turned into a 503 response with the body
`{"message": ..., "status": "error"}`.

A query may span at most two hours. A longer range raises
`QueryRangeTooLargeError`.

## Storage

`ProfileStorage` uses a SQLite database. It can be a file or `":memory:"`,
and holds three kinds of table:

- a table listing the known targets;
- one table of timestamps and error texts per target;
- one table of profile data per target.

Goroutine dumps are compressed with zstandard. A failed scrape keeps only its
error text.

`run_gc(retention_seconds)` does two things:

- It deletes profiles older than the retention window.
- It drops the tables of targets not scraped within that window.

Unless `gc_interval=None` is passed, garbage collection runs in a background
thread. After `close()`, the following raise `StoreClosedError`:

- adding profiles;
- querying;
- updating target info;
- running garbage collection.

## What the package does not do

- It has no command-line program. It does not listen on a network port either:
  `ProfilingApi.handle` returns a `Response` object, and serving it over HTTP
  is left to the caller.
- It does not render SVG itself. `single_profile_view` converts only through a
  `svg_converter` passed to `ProfilingApi`. Without one, or if it fails, the
  stored bytes are returned.
- It ships no etcd client. `Domain`, `create_clients_with_retry` and
  `TopologySyncer` take an etcd client, or a factory for one, from the caller.
- It does not query PD or etcd for TiDB, PD, TiKV or TiFlash instances.
  `TopologyDiscoverer` calls the fetcher functions it is given.
  `parse_ticdc_components` only turns TiCDC capture entries that have already
  been read from etcd into components.
- It has no general manager that keeps one custom scraper per live component.
  Only pprof profile scraping is provided, through `ScrapeManager`.