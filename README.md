# pbench

pbench runs benchmarks made of SQL queries against a Presto or Trino
cluster. A benchmark is a graph of *stages*. Each stage is a JSON file
that lists queries, query files, shell scripts to run around them, and
the stages that follow it. A stage starts only once all the stages
leading to it have finished, so stages that do not depend on each other
run concurrently, each in its own thread.

## Stage files

The stage id is the file name without its directory and extension.
Relative paths inside a stage file (query files and `next` stages) are
resolved against the directory of that file. Every query file and next
stage must exist when the graph is read.

```json
{
  "catalog": "tpch",
  "schema": "sf1",
  "session_params": {"query_max_execution_time": "1h"},
  "queries": ["SELECT count(*) FROM lineitem"],
  "query_files": ["queries/q01.sql", "queries/q02.sql"],
  "cold_runs": 1,
  "warm_runs": 2,
  "abort_on_error": false,
  "save_output": false,
  "save_column_metadata": false,
  "save_json": false,
  "pre_stage_scripts": ["echo starting"],
  "post_query_scripts": [],
  "pre_query_cycle_scripts": [],
  "post_query_cycle_scripts": [],
  "post_stage_scripts": [],
  "expected_row_counts": {"tpch.sf1": [1, 4, 5]},
  "next": ["stage_2.json", "stage_3.json"]
}
```

Notes on the fields:

- `catalog`, `schema`, `timezone`, `session_params`, `random_execution`,
  `randomly_execute_until`, the run counts and the `abort_on_error` /
  `save_*` switches are inherited by following stages that do not set
  them.
- `start_on_new_client: true` makes a stage open its own client instead
  of reusing its parent's. It is not inherited.
- `cold_runs` and `warm_runs` must not be negative. If together they do
  not give at least one run, each query runs once, cold.
- Query files are split into statements on semicolons outside quotes
  and comments. Inline queries run first, then the query files in order.
- `expected_row_counts` maps `catalog.schema`, a bare schema, or a
  regular expression searched in `catalog.schema` to the row counts
  expected for the queries in order.
- `random_execution: true` with `randomly_execute_until` set to a
  duration (such as `"1h"` or `"90s"`) or a count picks queries at random
  until the limit is reached, seeded from `states.rand_seed`. Expected
  row counts are not matched in this mode.
- Scripts run with `/bin/sh -c` in the stage's directory.
- The same stage may not be listed twice in one stage's `next`.

A `Stage` can also be built in code with `Stage.from_dict(data,
stage_id, base_dir)`, turned back into JSON with `Stage.to_dict()`, and
linked with `pbench.graph.parse_stage_graph(stage)`.

## Running a benchmark from Python

The package does not contain a Presto or Trino client. You supply one:
any object with the methods described by `pbench.model.PrestoClient`
(`catalog`, `schema`, `session_param`, `time_zone`, their `get_*`
counterparts, `append_client_tag`, `query` and `get_query_info`). Its
`query(text, headers)` returns a handle with `id`, `info_uri` and
`drain(callback)`; each batch passed to the callback has `data`,
`next_uri` and `columns`.

```python
from pbench.graph import parse_stage_graph_from_file
from pbench.recorders import FileBasedRunRecorder
from pbench.runner import run

stage, stages = parse_stage_graph_from_file("benchmarks/my_run/stage_1.json")
stage.init_states()
stage.states.new_client = make_my_client   # returns a PrestoClient-like object
stage.states.register_run_recorder(FileBasedRunRecorder())

exit_code = run(stage)
```

`run` creates an output directory named after the run (by default the
stage id) inside `states.output_path` (by default the stage's
directory), writes `<run name>.log` there, and returns the exit code:
`0` when everything went through, non-zero when a failure stopped a stage
set to abort on error or the run was cancelled.

A failed stage with `abort_on_error` cancels the whole run. SIGINT,
SIGTERM and SIGQUIT also cancel it when `run` is called from the main
thread; results gathered so far are still handed to the recorders.

`states.on_query_completion` may be set to a function that receives each
`QueryResult` as soon as its query finishes.

## Recording results

Recorders receive each query result as it completes and a summary when
the run ends.

- `FileBasedRunRecorder` (in `pbench.recorders`) writes
  `<stage id>_summary.csv` into the output directory.
- `new_mysql_run_recorder(cfg_path, ddl_statements)` (in
  `pbench.mysql_recorder`) reads a JSON file with `username`,
  `password`, `server` (`host[:port]`) and `database`, runs the given
  `CREATE TABLE` statements, and stores runs in `pbench_runs` and
  queries in `pbench_queries`. The table definitions are not shipped;
  pass your own. `new_mysql_run_recorder_with_db` takes an open
  connection instead.
- `new_influx_run_recorder` (in `pbench.recorders`) returns `None`
  without a config path, and otherwise a recorder whose `start` raises,
  since InfluxDB is not supported.

`pbench.orm.sql_insert_object` inserts a dataclass into tables named in
its fields' metadata, flattening nested dataclasses and lists of them.

## Output files

For each query, depending on the stage's switches, the output directory
receives:

- `<source>.output` with the raw rows, one per line (`save_output`),
- `<source>.cols.json` with the column metadata of the first run
  (`save_column_metadata`),
- `<source>.json` with the query info from the client (`save_json`, and
  always when the query failed),
- `<source>.error.json` with the type and message of a failed query's
  error.

`<source>` is the stage id, the query file name (or `inline`), the query
index when a file holds several queries, and `_c<n>` / `_w<n>` when each
query runs more than once.

## What the package does not do

- It has no command-line program; benchmarks are started from Python.
- It ships no Presto or Trino client (see above).
- It does not look up or record the deployment details of the cluster
  under test.