# ofuton

ofuton is a small object storage server. It speaks enough of the S3 API to
take single and multipart uploads, serve objects back with HTTP range
support, and delete them. Object data lives in a local directory. Metadata
lives in a SQLite database: path, size, MIME type and download filename.

## Installation

```
pip install .
```

## Running the server

```
ofuton
```

On its first run `ofuton` finds no `config.toml` in the current directory.
It writes a default one there, prints a note and exits. Check that file
before you start again. Values you leave out of `config.toml` take the
built-in defaults.

- `[server]`: `host` (default `127.0.0.1`) and `port` (default `3000`).
- `[database]`: `provider` is `sqlite` (the default) or `sqlite_memory`.
  `sqlite.path` is the database file (default `./ofuton.sqlite`).
  Pending schema migrations run at startup.
- `[bucket]`:
  - `path` is the directory that holds objects (default `./bucket`). It is
    created if missing.
  - `max_upload_size_mb` limits request bodies (default `100`).
  - `request_expiration_seconds` (default `3600`) sets how old a request
    signature may be. It is also how long an idle multipart upload is kept.
- `[account]`: `access_key` and `secret_key`. Write requests are checked
  against these with AWS Signature Version 4.
- `[debug]`: `log_level` is optional. It takes `off`, `error`, `warn`,
  `info`, `debug` or `trace`, or `0` to `5`. Without it the level is `info`.

Routes:

- `GET /` returns `ofuton v2025.8.1`.
- `GET /robots.txt` disallows all crawling.
- `GET` and `HEAD` on `/{bucket}/{object}` need no signature.
  - Responses carry `Content-Type`, `ETag`, a long-lived `Cache-Control`
    and an `inline` `Content-Disposition` with the stored filename.
  - `GET` honours a `Range: bytes=...` header.
  - Unknown paths give `404`.
- `PUT`, `POST` and `DELETE` on `/{bucket}/{object}` must be signed.
  Unsigned or badly signed requests get `403`.
  - `PUT` stores an object. With `uploadId` and `partNumber` in the query, it
    stores one part of a multipart upload instead.
  - `POST` starts a multipart upload and returns an
    `InitiateMultipartUploadResult` XML document. With `uploadId`, it
    completes the upload and returns a `CompleteMultipartUploadResult`.
  - `DELETE` removes an object. With `uploadId`, it aborts a multipart
    upload.

The filename of an upload is taken from its `Content-Disposition` header, as
`filename=` and `filename*=utf-8''...`. Unexpected errors give a `500`
response that carries a request id, and the same id is logged.

Multipart uploads that stay idle longer than `request_expiration_seconds` are
removed in the background. Leftover parts from an earlier run are removed at
startup.

## Moving objects from an older layout

```
ofuton migrate /path/to/old/objects
```

This walks the old directory tree. Each regular file is recorded under its
path relative to that directory, with a leading `/`. Its MIME type is guessed
from the file extension. The file is then moved into the bucket directory.
You are asked to confirm before anything moves.

## Importing filenames and MIME types

```
ofuton import metadata.tsv
```

The TSV file has no header row. Each line holds three columns: name, MIME
type and URL. Lines without exactly three fields, and URLs without a scheme,
are logged and skipped.

Each remaining line is matched to the object whose path equals the path of
the URL. If that object has no filename yet, the command records the filename
and MIME type. Names with characters outside the RFC 8187 `attr-char` set are
stored with those characters replaced by `_`, and the original name is kept
percent-encoded. You are asked to confirm first.

## What it does not do

- Only SQLite is supported. The `postgres` provider and its `[database.postgres]`
  section are accepted in the configuration, but choosing it stops startup
  with an error.
- The `[sentry]` section is read but not used. Errors are only written to the
  log.
- There is no bucket or object listing, and no per-bucket access control.
  The part of the path before the first `/` is only echoed back in multipart
  responses.

## Running the tests

```
pip install .[test]
pytest
```