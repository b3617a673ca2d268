import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from fleet_backend.api import serve
from fleet_backend.config import EngineConfig, WireGuardConfig, load_config, save_config
from fleet_backend.engine import Engine
from fleet_backend.errors import ConfigError, FleetError
from fleet_backend.models import ReconcileReport

console = Console()


def _open_engine(args) -> Engine:
    cfg = load_config(Path(args.config) if args.config else None)
    return Engine.open(cfg)


def _run(args, action):
    """
    Ouvre le moteur, exécute l'action puis une passe de réconciliation
    (sauf --no-reconcile), et referme tout.
    """
    async def main():
        engine = _open_engine(args)
        try:
            result = action(engine)
            if asyncio.iscoroutine(result):
                result = await result
            if not args.no_reconcile:
                report = await engine.reconciler.reconcile()
                _print_report(report)
            return result
        finally:
            await engine.close()

    return asyncio.run(main())


def _print_report(report: ReconcileReport) -> None:
    if not report.operations and not report.finalised:
        console.print("[dim][=] Backends déjà à jour.[/dim]")
        return
    for ref in report.applied:
        console.print(f"[green][+] Appliqué : {ref}[/green]")
    for ref in report.removed:
        console.print(f"[yellow][-] Retiré : {ref}[/yellow]")
    for ref in report.failed:
        console.print(f"[red][!] Échec : {ref}[/red]")
    for peer_id in report.finalised:
        console.print(f"[dim][x] Peer {peer_id} supprimé, adresse libérée[/dim]")


# ---------------------------------------------------
# Commande : init-config
# ---------------------------------------------------

def cmd_init_config(args):
    path = Path(args.config) if args.config else None
    cfg = EngineConfig(
        state_path=args.state,
        wireguard=WireGuardConfig(
            network_cidr=args.network,
            server_address=args.server_address,
            listen_port=args.port,
            endpoint=args.endpoint,
        ),
    )
    written = save_config(cfg, path)
    console.print(f"[+] Configuration écrite : {written}")
    console.print("[!] Ajoute les sections 'openvpn' / 'shadowsocks' au besoin.")


# ---------------------------------------------------
# Commande : add-peer
# ---------------------------------------------------

def cmd_add_peer(args):
    peer_id = _run(args, lambda engine: engine.manager.add_peer(args.name, args.backend))
    console.print(f"[+] Peer ajouté : {args.name} (id {peer_id}, {args.backend})")


# ---------------------------------------------------
# Commande : list-peers
# ---------------------------------------------------

def cmd_list(args):
    args.no_reconcile = True
    peers = _run(args, lambda engine: engine.manager.list_peers(args.backend, args.all))

    if not peers:
        console.print("Aucun peer.")
        return

    table = Table(title="Peers")
    for col in ("id", "nom", "backend", "état", "adresse", "erreur"):
        table.add_column(col)
    for p in peers:
        table.add_row(
            str(p.id), p.name, p.backend.value, p.state.value, p.address, p.last_error or "",
        )
    console.print(table)


# ---------------------------------------------------
# Commande : status
# ---------------------------------------------------

def cmd_status(args):
    args.no_reconcile = True
    status = _run(args, lambda engine: engine.manager.get_peer_status(args.id))
    console.print(f"Peer      : {status.name} (id {status.id})")
    console.print(f"Backend   : {status.backend.value}")
    console.print(f"État      : {status.state.value}" + (" (suppression en attente)" if status.removal_pending else ""))
    console.print(f"Adresse   : {status.address}")
    console.print(f"Clé       : {status.key_material or '-'}")
    if status.last_error:
        console.print(f"[red]Erreur    : {status.last_error} ({status.fault.value}, essais : {status.retry_count})[/red]")


# ---------------------------------------------------
# Commandes : revoke-peer / rotate-key / retry-peer
# ---------------------------------------------------

def cmd_revoke_peer(args):
    _run(args, lambda engine: engine.manager.revoke_peer(args.id))
    console.print(f"[OK] Peer {args.id} révoqué.")


def cmd_rotate_key(args):
    _run(args, lambda engine: engine.manager.rotate_key(args.id))
    console.print(f"[OK] Rotation de clé demandée pour le peer {args.id}.")


def cmd_retry_peer(args):
    _run(args, lambda engine: engine.manager.retry_peer(args.id))
    console.print(f"[OK] Faute effacée pour le peer {args.id}.")


def cmd_reconcile(args):
    args.no_reconcile = False
    _run(args, lambda engine: None)


# ---------------------------------------------------
# Commandes : export-peer / generate-qr
# ---------------------------------------------------

def cmd_export_peer(args):
    args.no_reconcile = True
    conf = _run(args, lambda engine: engine.manager.client_config(args.id))

    out_dir = Path(args.output)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / f"peer-{args.id}.conf"
    path.write_text(conf)
    path.chmod(0o600)

    console.print(f"[OK] Config générée : {path}")
    console.print("\n--- Configuration ---\n")
    console.print(conf, markup=False)


def cmd_generate_qr(args):
    args.no_reconcile = True
    png = _run(args, lambda engine: engine.manager.client_qr_png(args.id))

    out_dir = Path(args.output)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / f"peer-{args.id}.png"
    path.write_bytes(png)

    console.print(f"[OK] QR code généré : {path}")


# ---------------------------------------------------
# Commande : stats
# ---------------------------------------------------

def _fmt_bytes(n) -> str:
    if n is None:
        return "-"
    for unit in ("o", "Ko", "Mo", "Go"):
        if n < 1024:
            return f"{n:.0f} {unit}"
        n /= 1024
    return f"{n:.1f} To"


def _fmt_connected(value) -> str:
    if value is None:
        return "-"
    return "oui" if value else "non"


def cmd_stats(args):
    args.no_reconcile = True
    if args.id is not None:
        stats = _run(args, lambda engine: engine.manager.peer_stats(args.id)).to_dict()
        console.print(f"Peer      : {args.id} ({stats['peerRef']})")
        console.print(f"Connecté  : {_fmt_connected(stats['connected'])}")
        console.print(f"Trafic    : {_fmt_bytes(stats['transferBytes'])}")
        console.print(f"Handshake : {stats['latestHandshake'] or '-'}")
        return

    rows, unavailable = _run(args, lambda engine: engine.manager.fleet_stats(args.backend))
    table = Table(title="Trafic")
    for col in ("id", "nom", "backend", "connecté", "reçu", "envoyé", "total"):
        table.add_column(col)
    for status, stats in rows:
        d = stats.to_dict()
        table.add_row(
            str(status.id), status.name, status.backend.value, _fmt_connected(d["connected"]),
            _fmt_bytes(d["rxBytes"]), _fmt_bytes(d["txBytes"]), _fmt_bytes(d["transferBytes"]),
        )
    console.print(table)
    for kind in unavailable:
        console.print(f"[yellow][!] Backend {kind} injoignable[/yellow]")


# ---------------------------------------------------
# Commande : serve
# ---------------------------------------------------

def cmd_serve(args):
    engine = _open_engine(args)
    serve(engine)


# ---------------------------------------------------
# CLI / Parser
# ---------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vpn-fleet")
    parser.add_argument("--config", help="fichier de configuration (défaut : data/fleet.json)")
    parser.add_argument("--no-reconcile", action="store_true", help="ne pas lancer de réconciliation")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd")

    # init-config
    p_init = sub.add_parser("init-config")
    p_init.add_argument("--endpoint", required=False)
    p_init.add_argument("--port", type=int, default=51820)
    p_init.add_argument("--network", default="10.8.0.0/24")
    p_init.add_argument("--server-address", default="10.8.0.1/24")
    p_init.add_argument("--state", default="data/state.json")
    p_init.set_defaults(func=cmd_init_config)

    # add-peer
    p_add = sub.add_parser("add-peer")
    p_add.add_argument("name")
    p_add.add_argument("--backend", default="wireguard", choices=["wireguard", "openvpn", "shadowsocks"])
    p_add.set_defaults(func=cmd_add_peer)

    # list-peers
    p_list = sub.add_parser("list-peers")
    p_list.add_argument("--backend", choices=["wireguard", "openvpn", "shadowsocks"])
    p_list.add_argument("--all", action="store_true", help="inclure les peers révoqués")
    p_list.set_defaults(func=cmd_list)

    for name, func in (
        ("status", cmd_status),
        ("revoke-peer", cmd_revoke_peer),
        ("rotate-key", cmd_rotate_key),
        ("retry-peer", cmd_retry_peer),
    ):
        p = sub.add_parser(name)
        p.add_argument("id", type=int)
        p.set_defaults(func=func)

    p_rec = sub.add_parser("reconcile")
    p_rec.set_defaults(func=cmd_reconcile)

    p_export = sub.add_parser("export-peer")
    p_export.add_argument("id", type=int)
    p_export.add_argument("--output", default="configs")
    p_export.set_defaults(func=cmd_export_peer)

    # generate-qr
    p_qr = sub.add_parser("generate-qr")
    p_qr.add_argument("id", type=int)
    p_qr.add_argument("--output", default="configs")
    p_qr.set_defaults(func=cmd_generate_qr)

    p_stats = sub.add_parser("stats")
    p_stats.add_argument("id", type=int, nargs="?")
    p_stats.add_argument("--backend", choices=["wireguard", "openvpn", "shadowsocks"])
    p_stats.set_defaults(func=cmd_stats)

    p_serve = sub.add_parser("serve")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )

    try:
        args.func(args)
    except ConfigError as e:
        console.print(f"[red][ERREUR] Configuration : {e}[/red]")
        return 2
    except FleetError as e:
        console.print(f"[red][ERREUR] {type(e).__name__} : {e}[/red]")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
