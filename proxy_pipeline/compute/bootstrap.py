"""
Startup script handed to a transcode instance.

The script is an opaque artifact: the orchestration core only knows it will
either call back to /webhook or be reaped by the sweeper. It
  1. installs tooling and downloads the source,
  2. encodes and uploads each requested quality under proxies/<proxy_job_id>/,
  3. reports the qualities it actually produced (completed if all, else failed),
  4. powers the instance off on exit, whatever happened before.
"""

import json
import shlex
from dataclasses import dataclass
from typing import List, Optional

from proxy_pipeline.common.config import Settings
from proxy_pipeline.common.qualities import profile
from proxy_pipeline.common.storage import PROXY_PREFIX


@dataclass(frozen=True)
class BootstrapPayload:
    job_id: str
    script: str


def _q(value: str) -> str:
    return shlex.quote(value)


def _encode_step(quality: str, bucket: str, proxy_job_id: str) -> str:
    p = profile(quality)
    out = f"{quality}.mp4"
    dest = f"s3://{bucket}/{PROXY_PREFIX}{proxy_job_id}/{out}"
    return f"""
# {quality}
echo "Starting transcoding of {quality}..."
if ffmpeg -y -i source.mp4 -c:v h264 -preset {p.preset} -b:v {p.bitrate} -maxrate {p.bitrate} -bufsize {p.bitrate} \\
     -vf "scale=-2:{p.height}" -c:a aac -b:a 128k -movflags +faststart {_q(out)} \\
   && aws s3 cp {_q(out)} {_q(dest)} --endpoint-url "$S3_ENDPOINT" --content-type video/mp4; then
  PRODUCED+=({_q(quality)})
  echo "{quality} complete."
else
  FAILED+=({_q(quality)})
  echo "{quality} failed."
fi"""


def build_bootstrap(
    settings: Settings,
    job_id: str,
    proxy_job_id: str,
    source_url: str,
    qualities: List[str],
    webhook_url: Optional[str] = None,
) -> BootstrapPayload:
    callback_url = f"{settings.api_base_url.rstrip('/')}/webhook"
    steps = "\n".join(_encode_step(q, settings.proxy_bucket, proxy_job_id) for q in qualities)
    external = ""
    if webhook_url:
        external = f"""
echo "Notifying external webhook..."
curl -s -m 30 -X POST {_q(webhook_url)} -H "Content-Type: application/json" -d "$PAYLOAD" || true"""

    script = f"""#!/bin/bash
set -u
trap 'shutdown -h now' EXIT

export AWS_ACCESS_KEY_ID={_q(settings.s3_access_key)}
export AWS_SECRET_ACCESS_KEY={_q(settings.s3_secret_key)}
export AWS_DEFAULT_REGION={_q(settings.s3_region)}
S3_ENDPOINT={_q(settings.public_s3_endpoint)}
JOB_ID={_q(job_id)}
PRODUCED=()
FAILED=()

apt-get update
apt-get install -y ffmpeg wget curl awscli jq

mkdir -p /tmp/transcoding/"$JOB_ID"
cd /tmp/transcoding/"$JOB_ID"

if ! (wget -q {_q(source_url)} -O source.mp4 || curl -sfL {_q(source_url)} -o source.mp4); then
  FAILED+=(download)
else
{steps}
fi

if [ ${{#FAILED[@]}} -eq 0 ]; then
  STATUS=completed
  ERROR=null
else
  STATUS=failed
  ERROR=$(printf '%s ' "${{FAILED[@]}}" | jq -R '"encode/upload failed: " + .')
fi
QUALITIES=$(printf '%s\\n' "${{PRODUCED[@]}}" | jq -R . | jq -s -c 'map(select(length > 0))')
PAYLOAD=$(jq -n -c --arg jobId "$JOB_ID" --arg status "$STATUS" --argjson qualities "$QUALITIES" --argjson error "$ERROR" \\
  '{{jobId: $jobId, status: $status, qualities: $qualities, error: $error}}')

echo "Notifying controller of $STATUS..."
curl -s -m 30 --retry 3 -X POST {_q(callback_url)} \\
  -H "Content-Type: application/json" \\
  -H {_q("Authorization: Bearer " + settings.api_secret)} \\
  -d "$PAYLOAD" || echo "callback failed"
{external}
echo "Transcoding finished ({json.dumps(qualities)}). Shutting down..."
"""
    return BootstrapPayload(job_id=job_id, script=script)
