from pathlib import Path
import os

from huggingface_hub import snapshot_download
from archetype_match import config


def main() -> None:
    # Use the same HF env as the service, but force ONLINE for this script
    os.environ.update(config.HF_ENV_VARS)
    os.environ["HF_HUB_OFFLINE"] = "0"

    cache_root = Path(os.environ.get("HF_HOME", str(config.MODELS_DIR))).resolve()
    print(f"Using HF_HOME: {cache_root}")

    repo_id = config.EMBED_MODEL
    print(f"\nDownloading repo: {repo_id}")
    local_path = snapshot_download(repo_id=repo_id, local_files_only=False)
    print(f"Cached at: {local_path}")

    cfg = Path(local_path) / "preprocessor_config.json"
    if cfg.exists():
        print(f"  Found preprocessor_config.json at: {cfg}")
    else:
        print(f"  WARNING: preprocessor_config.json NOT found in: {local_path}")

    print("\nFinished downloading the embedding model for offline use.")


if __name__ == "__main__":
    main()
