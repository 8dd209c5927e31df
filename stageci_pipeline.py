# stageci_pipeline.py
# ffsend builds, tests and releases: check on several toolchains, build
# gnu/musl binaries, test them, and publish on version tags.
from __future__ import annotations

from stageci.dsl import artifacts, cache, job, matrix, pipeline, script, sh

RELEASE_TAG = "/^v(\\d+\\.)*\\d+$/"


def check_job(version: str):
    return job(
        f"check-{version}",
        *script(
            "cargo check --verbose",
            "cargo check --no-default-features --features send2 --verbose",
            "cargo check --no-default-features --features send3 --verbose",
            "cargo check --features no-color --verbose",
        ),
        stage="check",
        variables={"RUST_VERSION": version},
    )


def definition():
    return pipeline(
        matrix("RUST_VERSION", ["stable", "beta", "nightly", "1.32.0"]).jobs(check_job),

        job(
            "build-x86_64-linux-gnu",
            sh("Build", "cargo build --target=$RUST_TARGET --release --verbose"),
            sh("Collect binary", "mv target/$RUST_TARGET/release/ffsend ./ffsend-$RUST_TARGET"),
            sh("Strip", "strip -g ./ffsend-$RUST_TARGET"),
            stage="build",
            artifacts=artifacts("ffsend-$RUST_TARGET", name="ffsend-x86_64-linux-gnu", expire_in="1 month"),
        ),
        job(
            "build-x86_64-linux-musl",
            sh("Add target", "rustup target add $RUST_TARGET"),
            sh("Install musl tools", "apt install -y build-essential wget musl-tools"),
            sh(
                "Build static OpenSSL",
                "wget https://www.openssl.org/source/openssl-1.0.2o.tar.gz\n"
                "tar xzvf openssl-1.0.2o.tar.gz\n"
                "cd openssl-1.0.2o\n"
                "./config -fPIC --openssldir=/usr/local/ssl --prefix=/usr/local\n"
                "make && make install",
            ),
            sh(
                "Build",
                "export OPENSSL_STATIC=1 OPENSSL_LIB_DIR=/usr/local/lib OPENSSL_INCLUDE_DIR=/usr/local/include\n"
                "cargo build --target=$RUST_TARGET --release --verbose",
            ),
            sh("Collect binary", "mv target/$RUST_TARGET/release/ffsend ./ffsend-$RUST_TARGET"),
            sh("Strip", "strip -g ./ffsend-$RUST_TARGET"),
            stage="build",
            variables={"RUST_TARGET": "x86_64-unknown-linux-musl"},
            artifacts=artifacts("ffsend-$RUST_TARGET", name="ffsend-x86_64-linux-musl", expire_in="1 month"),
        ),

        job(
            "test-cargo",
            sh("Unit tests", "cargo test --verbose"),
            stage="test",
            dependencies=[],
        ),
        job(
            "test-public",
            sh("Prepare binary", "mv ./ffsend-$RUST_TARGET ./ffsend && chmod a+x ./ffsend"),
            sh("Random file", "head -c1m </dev/urandom >test.txt"),
            sh("Upload", "./ffsend upload test.txt -I"),
            sh("Download", "./ffsend download $(./ffsend history -q) -I -o=download.txt"),
            sh("Compare", "cmp -s ./test.txt ./download.txt || (echo 'ERROR: Downloaded file is different than original'; exit 1)"),
            stage="test",
            image="alpine:latest",
            dependencies=["build-x86_64-linux-musl"],
            variables={"GIT_STRATEGY": "none", "RUST_TARGET": "x86_64-unknown-linux-musl"},
            before=[],
        ),

        job(
            "release-crate",
            sh("Login", "echo $CARGO_TOKEN | cargo login"),
            sh("Publish", "cargo publish --verbose --allow-dirty"),
            stage="release",
            dependencies=[],
            only=[RELEASE_TAG],
        ),
        job(
            "release-github",
            sh("Install tools", "apt-get update && apt-get install -y curl wget gzip netbase"),
            sh(
                "Fetch github-release",
                "wget $(curl -s https://api.github.com/repos/tfausak/github-release/releases/latest "
                "| grep 'browser_' | cut -d\\\" -f4 | grep 'linux') -O github-release.gz\n"
                "gunzip github-release.gz && chmod a+x ./github-release",
            ),
            sh(
                "Create release",
                './github-release release --token "$GITHUB_TOKEN" --owner timvisee --repo ffsend '
                '--tag "$CI_COMMIT_REF_NAME" --title "ffsend $CI_COMMIT_REF_NAME"',
            ),
            sh(
                "Upload binaries",
                "for t in x86_64-unknown-linux-gnu x86_64-unknown-linux-musl; do\n"
                '  ./github-release upload --token "$GITHUB_TOKEN" --owner timvisee --repo ffsend '
                '--tag "$CI_COMMIT_REF_NAME" --file ./ffsend-$t --name ffsend-$CI_COMMIT_REF_NAME-$t\n'
                "done",
            ),
            stage="release",
            dependencies=["build-x86_64-linux-gnu", "build-x86_64-linux-musl"],
            only=[RELEASE_TAG],
            before=[],
        ),
        job(
            "release-snap",
            sh("Prepare", "apt-get update -y"),
            sh("Bump snapcraft.yaml", 'VERSION=$(echo $CI_COMMIT_REF_NAME | cut -c 2-)\n'
               'sed "s/^version:.*\\$/version: $VERSION/" -i snapcraft.yaml'),
            sh("Build snap", "snapcraft"),
            sh(
                "Publish snap",
                'echo "$SNAPCRAFT_LOGIN" | base64 -d > snapcraft.login\n'
                "snapcraft login --with snapcraft.login\n"
                "snapcraft push --release=stable ffsend_*_amd64.snap",
            ),
            stage="release",
            image="snapcore/snapcraft:edge",
            dependencies=[],
            only=[RELEASE_TAG],
            before=[],
            cwd="pkg/snap",
            artifacts=artifacts("pkg/snap/ffsend_*_amd64.snap", name="ffsend-snap-x86_64", expire_in="1 month"),
        ),

        job(
            "package-aur",
            sh("Bump PKGBUILDs", 'VERSION=$(echo $CI_COMMIT_REF_NAME | cut -c 2-)\n'
               'sed "s/^pkgver=.*\\$/pkgver=$VERSION/" -i bin/PKGBUILD git/PKGBUILD'),
            sh("Make packages", "cd bin && makepkg -c && cd ../git && makepkg -c"),
            stage="package",
            image="archlinux/base",
            dependencies=[],
            only=[RELEASE_TAG],
            before=[],
            cwd="pkg/aur",
        ),

        stages=["check", "build", "test", "release", "package"],
        name="ffsend",
        image="rust:slim",
        variables={"RUST_VERSION": "stable", "RUST_TARGET": "x86_64-unknown-linux-gnu"},
        before=script(
            "apt-get update",
            "apt-get install -y --no-install-recommends build-essential pkg-config libssl-dev",
            "rustup install $RUST_VERSION && rustup default $RUST_VERSION",
            "rustc --version && cargo --version",
        ),
        cache=cache("target/", variant=["$RUST_VERSION"]),
    )
