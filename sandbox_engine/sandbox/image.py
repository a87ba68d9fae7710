"""Runtime image for sandbox containers."""

import asyncio
import logging

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_NAME = "sandbox-engine-runtime:latest"

# Dockerfile for the runtime image: shell, python3 and node, non-root user
DOCKERFILE_CONTENT = '''# Sandbox Engine Runtime Image
FROM python:3.12-slim

ENV DEBIAN_FRONTEND=noninteractive \\
    PYTHONDONTWRITEBYTECODE=1 \\
    PYTHONUNBUFFERED=1

# Node.js from the distribution; no build toolchain, no network tools
RUN apt-get update && apt-get install -y --no-install-recommends \\
    nodejs \\
    ca-certificates \\
    && rm -rf /var/lib/apt/lists/*

ARG USER_ID=1000
ARG GROUP_ID=1000
RUN groupadd -g ${GROUP_ID} sandbox && \\
    useradd -m -u ${USER_ID} -g sandbox -s /bin/sh sandbox

RUN mkdir -p /workspace && chown sandbox:sandbox /workspace

USER sandbox
WORKDIR /workspace

CMD ["sh"]
'''


def generate_dockerfile(output_path: str = "Dockerfile") -> str:
    """Generate the Dockerfile for the runtime image."""
    with open(output_path, "w") as f:
        f.write(DOCKERFILE_CONTENT)
    return output_path


async def build_runtime_image(
    dockerfile_path: str = "Dockerfile",
    image_name: str = DEFAULT_IMAGE_NAME,
    context_dir: str = ".",
    docker_binary: str = "docker",
) -> bool:
    """Build the runtime image with `docker build`."""
    try:
        process = await asyncio.create_subprocess_exec(
            docker_binary, "build", "-t", image_name, "-f", dockerfile_path, context_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.error(f"Cannot run {docker_binary}: {e}")
        return False

    _, stderr = await process.communicate()

    if process.returncode == 0:
        logger.info(f"Successfully built image: {image_name}")
        return True

    logger.error(f"Failed to build image {image_name}: {stderr.decode(errors='replace')}")
    return False
