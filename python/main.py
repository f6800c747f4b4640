#!/usr/bin/env python3
"""Multipart Uploader - エントリーポイント"""
import argparse
import os

from multipart_uploader import Config, MultipartUploader


def load_config(path: str) -> Config:
    """設定ファイルがなければデフォルト設定を使う"""
    if os.path.exists(path):
        return Config.from_file(path)
    return Config.default()


def serve(config: Config):
    """リレーサーバーを起動"""
    import uvicorn
    from multipart_uploader.relay import create_app

    uvicorn.run(create_app(config), host=config.relay.host, port=config.relay.port)


def main():
    """メイン関数"""
    parser = argparse.ArgumentParser(description="Multipart upload relay and client")
    parser.add_argument("--config", default="config.json")
    parser.add_argument("--direct", action="store_true", help="bypass the relay and use the store directly")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("serve")
    upload_parser = commands.add_parser("upload")
    upload_parser.add_argument("file")
    upload_parser.add_argument("--key")
    download_parser = commands.add_parser("download")
    download_parser.add_argument("key")
    download_parser.add_argument("--dest", default=".")
    commands.add_parser("list")

    args = parser.parse_args()

    try:
        config = load_config(args.config)

        if args.command == "serve":
            serve(config)
            return

        uploader = MultipartUploader(config, direct=args.direct)

        if args.command == "upload":
            result = uploader.upload(args.file, args.key)
            print(result.message)
            exit(0 if result.success else 1)
        elif args.command == "download":
            print(uploader.download(args.key, args.dest))
        elif args.command == "list":
            for obj in uploader.list_objects():
                print(f"{obj.key}\t{obj.size}\t{obj.uploaded_at.isoformat()}")

    except Exception as e:
        print(f"Error: {e}")
        exit(1)


if __name__ == "__main__":
    main()
