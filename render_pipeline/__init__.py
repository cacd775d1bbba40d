"""Render orchestration and encoding pipeline.

Modules:
- validation: Parameter checks run before any resource is acquired
- codec_registry: Codec profiles and ffmpeg argument builders
- frame_source / browser_source: Frame capture sessions (synthetic, Playwright)
- encoder: Streaming ffmpeg encoder session fed on stdin
- runner / concat / audio: One-shot ffmpeg steps (segment merge, audio mix and mux)
- job: One render job (source -> encoder), stills and metadata probes
- parallel: Segment split, concurrent segment jobs and concat merge
- batch: Data-driven batch rendering with per-row isolation
- progress: Console bar and cross-thread progress aggregation
- service: Facade used by the CLI and the HTTP server
"""
