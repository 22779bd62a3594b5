# Actions used by examples/rust.yml:
#   matrixci run --config examples/rust.yml --actions examples/rust_actions.py


def register(registry):
    registry.shell(
        "hecrj/setup-rust-action",
        "v1.0.2",
        "rustup toolchain install ${{ inputs.rust-version }} && rustup default ${{ inputs.rust-version }}",
        defaults={"rust-version": "stable"},
    )

    # sources are already on disk for local runs
    registry.shell("actions/checkout", "*", "git rev-parse --show-toplevel")
