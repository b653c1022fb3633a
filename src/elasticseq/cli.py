"""
elasticseq CLI — Command-Line Interface
=======================================

Usage:
    elasticseq cluster health
    elasticseq cluster indices
    elasticseq sequences
    elasticseq create myindex --shards 5
    elasticseq next-id myindex --count 10 --cache-size 10
    elasticseq max-id myindex
    elasticseq load "data/*.jsonl" --index myindex --sequence
"""

import argparse
from typing import List, Optional

from .config import ConnectionSettings
from .logging import configure_logging

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def get_settings(args) -> ConnectionSettings:
    """Connection settings from the environment, overridden by flags."""
    hosts = args.hosts.split(",") if args.hosts else None
    return ConnectionSettings.from_env(hosts=hosts, api_key=args.api_key)


def cmd_cluster_health(args):
    """Show cluster health and the state of the sequence index."""
    from .cluster import ClusterManager

    with ClusterManager(settings=get_settings(args)) as manager:
        health = manager.health()

    print(f"{health['cluster']}: {health['status']} "
          f"({health['nodes']} nodes, {health['unassigned_shards']} unassigned shards)")
    print(f"sequence index: {health['sequence_index'] or 'not created'}")


def cmd_cluster_indices(args):
    """List all indices."""
    from .cluster import ClusterManager

    with ClusterManager(settings=get_settings(args)) as manager:
        rows = manager.indices()

    print(f"{'Index':<30} {'Health':<8} {'Status':<6} {'Docs':>12} {'Size':>10}")
    for row in rows:
        print(f"{row['name']:<30} {row['health']:<8} {row['status']:<6} "
              f"{row['docs_count']:>12,} {row['size']:>10}")


def cmd_sequences(args):
    """List sequence counters."""
    from .cluster import ClusterManager

    with ClusterManager(settings=get_settings(args)) as manager:
        counters = manager.sequences()

    if not counters:
        print("No sequences.")
        return

    print(f"\n{'Sequence':<40} {'Last ID':>12}")
    print("-" * 53)
    for key, value in sorted(counters.items()):
        print(f"{key:<40} {value:>12,}")


def cmd_create(args):
    """Create a new index."""
    from .cluster import ClusterManager

    with ClusterManager(settings=get_settings(args)) as manager:
        manager.create_index(args.index, shards=args.shards, replicas=args.replicas)
    print(f"Created index {args.index} ({args.shards} shards, {args.replicas} replicas)")


def cmd_delete(args):
    """Delete an index, asking first unless --force is given."""
    from .cluster import ClusterManager

    if not args.force and input(f"Delete index '{args.index}'? [y/N] ").lower() != "y":
        print("Aborted.")
        return

    with ClusterManager(settings=get_settings(args)) as manager:
        manager.delete_index(args.index)
    print(f"Deleted index {args.index}")


def cmd_next_id(args):
    """Draw ids from a sequence."""
    from .core import ElasticStore

    with ElasticStore(args.index, settings=get_settings(args)) as store:
        sequence = store.set_sequence_mode(
            args.cache_size or args.count,
            name=args.name,
            timeout=args.timeout
        )
        for _ in range(args.count):
            print(sequence.get_id())


def cmd_max_id(args):
    """Show the highest integer id in an index."""
    from .core import ElasticStore
    from .sequence import BootstrapScanner

    with ElasticStore(args.index, settings=get_settings(args), create_if_missing=False) as store:
        floor = BootstrapScanner(store, args.index, id_field=args.id_field).floor()
    print(floor)


def cmd_load(args):
    """Bulk load JSONL files into an index."""
    from .builder import BulkLoader
    from .core import ElasticStore

    with ElasticStore(args.index, settings=get_settings(args)) as store:
        if args.sequence:
            store.set_sequence_mode(args.cache_size)
        loader = BulkLoader(store, batch_size=args.batch_size, id_key=args.id_key)
        stats = loader.add_jsonl_files(args.pattern)

    print(f"Total records: {stats['total_records']:,}")
    print(f"Total errors: {stats['total_errors']:,}")
    print(f"Files processed: {stats['files_processed']}")
    print(f"Average rate: {stats['rate_per_second']:,.0f} records/second")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="elasticseq",
        description="elasticseq — Elasticsearch document store with auto-increment ids"
    )

    # Global options
    parser.add_argument(
        "--hosts",
        help="Elasticsearch hosts (comma-separated)",
        default=None
    )
    parser.add_argument(
        "--api-key",
        dest="api_key",
        help="Elasticsearch API key",
        default=None
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=LOG_LEVELS,
        default="WARNING",
        help="Log level"
    )
    parser.add_argument(
        "--log-json",
        dest="log_json",
        action="store_true",
        help="Log one JSON object per line"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # cluster command
    cluster_parser = subparsers.add_parser("cluster", help="Cluster operations")
    cluster_parser.set_defaults(cluster_help=cluster_parser.print_help)
    cluster_sub = cluster_parser.add_subparsers(dest="cluster_cmd")

    cluster_sub.add_parser("health", help="Show cluster health")
    cluster_sub.add_parser("indices", help="List all indices")

    # sequences command
    subparsers.add_parser("sequences", help="List sequence counters")

    # create command
    create_parser = subparsers.add_parser("create", help="Create an index")
    create_parser.add_argument("index", help="Index name")
    create_parser.add_argument("--shards", type=int, default=1, help="Primary shards")
    create_parser.add_argument("--replicas", type=int, default=1, help="Replica shards")

    # delete command
    delete_parser = subparsers.add_parser("delete", help="Delete an index")
    delete_parser.add_argument("index", help="Index name")
    delete_parser.add_argument("-f", "--force", action="store_true", help="Skip confirmation")

    # next-id command
    next_parser = subparsers.add_parser("next-id", help="Draw ids from a sequence")
    next_parser.add_argument("index", help="Index the sequence belongs to")
    next_parser.add_argument("--name", help="Sequence name (default: index name)")
    next_parser.add_argument("--count", type=int, default=1, help="Number of ids")
    next_parser.add_argument("--cache-size", type=int, help="IDs per round trip (default: count)")
    next_parser.add_argument("--timeout", type=float, default=30.0, help="Seconds to wait per id")

    # max-id command
    max_parser = subparsers.add_parser("max-id", help="Highest integer id in an index")
    max_parser.add_argument("index", help="Index name")
    max_parser.add_argument("--id-field", dest="id_field", help="Numeric field mirroring the id")

    # load command
    load_parser = subparsers.add_parser("load", help="Bulk load JSONL files")
    load_parser.add_argument("pattern", help="Glob pattern for JSONL files")
    load_parser.add_argument("--index", required=True, help="Target index name")
    load_parser.add_argument("--batch-size", type=int, default=5000, help="Batch size")
    load_parser.add_argument("--id-key", default="id", help="Record field holding the id")
    load_parser.add_argument("--sequence", action="store_true", help="Assign sequence ids")
    load_parser.add_argument("--cache-size", type=int, default=1000, help="Sequence cache size")

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, json_output=args.log_json)

    if args.command == "cluster":
        if args.cluster_cmd == "health":
            cmd_cluster_health(args)
        elif args.cluster_cmd == "indices":
            cmd_cluster_indices(args)
        else:
            args.cluster_help()
    elif args.command == "sequences":
        cmd_sequences(args)
    elif args.command == "create":
        cmd_create(args)
    elif args.command == "delete":
        cmd_delete(args)
    elif args.command == "next-id":
        cmd_next_id(args)
    elif args.command == "max-id":
        cmd_max_id(args)
    elif args.command == "load":
        cmd_load(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
