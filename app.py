"""
Export a single image layer through a shim registry.

Starts a registry on an ephemeral localhost port, asks the docker daemon to
push the requested layer to it and writes the pushed layer to disk.

Shim Endpoints (registry API v1, push side):
    - GET /v1/_ping - Liveness probe
    - PUT /v1/repositories/<repo>/ - Start of a push
    - GET/PUT /v1/repositories/<repo>/tags/<tag> - Tag lookups
    - GET/PUT /v1/images/<id>/json - Layer metadata
    - PUT /v1/images/<id>/layer - Layer blob
    - GET/PUT /v1/images/<id>/checksum - Layer checksum

Environment Variables:
    LOG_LEVEL, SHIM_HOST, PING_SLEEPS_MS, PING_TIMEOUT, BLOB_CHUNK_SIZE,
    MAX_METADATA_SIZE, MAX_LAYER_ID_LENGTH, MAX_REPOSITORY_NAME_LENGTH,
    MAX_TAG_LENGTH, DOCKER_HOST

Example:
    $ LOG_LEVEL=DEBUG python app.py -o /tmp/layers busybox
    $ python app.py --registry-format -o /tmp/layers 5f70bf18a086
"""

from layergrab.cli import main


if __name__ == "__main__":
    main()
