# hsrec/cli.py
"""
Command-line runner for the hsrec recommender.

- ``build``: load a taxonomy and warm the index cache (lexical pickle,
  embedding matrix) so the API starts without a cold build.
- ``query``: recommend codes for one description, or for every row of a
  CSV/Excel file with a ``Query`` column, without starting FastAPI.
"""

from __future__ import annotations
import argparse
from pathlib import Path
from typing import List, Optional, Tuple

import pandas as pd

from hsrec.config import CACHE_DIR, CORPUS_PATH, DEFAULT_K, EngineConfig
from hsrec.engine import RecommendationEngine
from hsrec.augment import AnthropicAugmenter
from hsrec.semantic_index import load_default_embedder


def _make_engine(args) -> RecommendationEngine:
    config = EngineConfig(
        cache_dir=None if args.no_cache else Path(args.cache_dir),
        **({"alpha": args.alpha} if getattr(args, "alpha", None) is not None else {}),
    )
    embedder = None if args.lexical_only else load_default_embedder()
    augmenter = (
        AnthropicAugmenter.from_env(http_timeout=config.augment_timeout)
        if getattr(args, "augment", False)
        else None
    )
    return RecommendationEngine(config=config, embedder=embedder, augmenter=augmenter)


def load_queries(path: Path) -> List[str]:
    ext = path.suffix.lower()
    df = pd.read_excel(path) if ext in {".xlsx", ".xls"} else pd.read_csv(path)
    cols = {c.lower(): c for c in df.columns}
    qcol = cols.get("query")
    if not qcol:
        raise ValueError(f"Expected column 'Query' in {path}. Found: {list(df.columns)}")
    return df[qcol].astype(str).tolist()


def write_predictions(rows: List[Tuple[str, int, str, float]], out_path: Path) -> None:
    df = pd.DataFrame(rows, columns=["Query", "Rank", "Code", "Score"])
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=False)


def cmd_build(args) -> int:
    with _make_engine(args) as engine:
        corpus = engine.load(Path(args.corpus))
        status = engine.status()
        print(f"Built indices for {len(corpus)} entries (skipped {corpus.skipped})")
        print(f"fingerprint={status.corpus_fingerprint} semantic={status.semantic_enabled}")
    return 0


def cmd_query(args) -> int:
    with _make_engine(args) as engine:
        engine.load(Path(args.corpus))
        if args.inp:
            queries = load_queries(Path(args.inp))
        else:
            queries = [" ".join(args.text)]

        rows: List[Tuple[str, int, str, float]] = []
        for i, q in enumerate(queries, 1):
            rec = engine.recommend(q, k=args.k, augment=args.augment)
            for r in rec.results:
                rows.append((q, r.rank, r.code, r.scores.blended))
            if not args.out:
                flags = []
                if not rec.semantic_enabled:
                    flags.append("lexical-only")
                if rec.cache_hit:
                    flags.append("cached")
                if rec.augmented:
                    flags.append("augmented")
                print(f"# {q}" + (f"  [{', '.join(flags)}]" if flags else ""))
                for r in rec.results:
                    print(f"{r.rank:>3}. {r.code:<12} {r.scores.blended:.4f}  {r.description}")
            elif i % 10 == 0 or i == len(queries):
                print(f"Processed {i}/{len(queries)} queries")

        if args.out:
            write_predictions(rows, Path(args.out))
            print(f"Wrote {len(rows)} rows to {args.out}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="hsrec")
    ap.add_argument("--corpus", type=str, default=str(CORPUS_PATH), help="taxonomy source file")
    ap.add_argument("--cache-dir", type=str, default=str(CACHE_DIR))
    ap.add_argument("--no-cache", action="store_true", help="keep caches in memory only")
    ap.add_argument("--lexical-only", action="store_true", help="skip the embedding model")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("build", help="load the taxonomy and warm the index cache")

    q = sub.add_parser("query", help="recommend codes for a description")
    q.add_argument("text", nargs="*", help="product description")
    q.add_argument("--k", type=int, default=DEFAULT_K)
    q.add_argument("--alpha", type=float, default=None, help="lexical weight in [0, 1]")
    q.add_argument("--augment", action="store_true", help="re-rank with the hosted LLM")
    q.add_argument("--in", dest="inp", type=str, default=None, help="CSV/Excel with a Query column")
    q.add_argument("--out", dest="out", type=str, default=None, help="write predictions CSV")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "build":
        return cmd_build(args)
    if not args.text and not args.inp:
        build_parser().error("query needs TEXT or --in FILE")
    return cmd_query(args)


if __name__ == "__main__":
    raise SystemExit(main())
