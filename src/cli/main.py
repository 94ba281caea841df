"""CLIエントリポイント

使い方:
    python -m src.cli.main db init
    python -m src.cli.main db stats
    python -m src.cli.main product add --sku SKU-1 --title "Mug" --price 12.5 --stock 10
    python -m src.cli.main product list
    python -m src.cli.main credentials set -u alice -m shopify -c shop_domain=x.myshopify.com -c access_token=...
    python -m src.cli.main credentials list -u alice
    python -m src.cli.main credentials delete -u alice -m shopify
    python -m src.cli.main credentials genkey
    python -m src.cli.main marketplace health -u alice
    python -m src.cli.main marketplace product -u alice -m takealot --sku SKU-1
    python -m src.cli.main marketplace orders -u alice -m amazon --days 7
    python -m src.cli.main push --id 1 -u alice -m shopify --price 10 --rrp 15 --stock 3
    python -m src.cli.main sync stock -u alice
    python -m src.cli.main sync orders -u alice
    python -m src.cli.main shipping rates -u alice --from US:10001 --to GB:SW1A1AA --weight 1.2
    python -m src.cli.main shipping track -u alice -n 1234567890
    python -m src.cli.main activity --id 1
    python -m src.cli.main web --port 8080
"""

import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

# .envファイル読み込み
_project_root = Path(__file__).parent.parent.parent
_env_path = _project_root / "config" / ".env"
if _env_path.exists():
    load_dotenv(_env_path)

# プロジェクトルートをパスに追加（python -m 実行用）
sys.path.insert(0, str(_project_root))

from src.config import database_path, load_config
from src.db.database import Database
from src.marketplaces.errors import MarketplaceError

console = Console()

USER_OPTION = click.option("-u", "--user", "user_id", required=True, help="ユーザーID")


def _context():
    """AppContextを生成（暗号鍵が無ければ終了）"""
    from src.app_context import build_context

    try:
        return build_context()
    except ValueError as e:
        console.print("[red]初期化エラー: {}[/red]".format(e))
        console.print("[dim]config/.env に CREDENTIAL_ENCRYPTION_KEY を設定してください。[/dim]")
        raise SystemExit(1)


def _run(ctx, work):
    """非同期処理を実行し、マーケットプレイスのエラーは表示して終了"""
    try:
        return ctx.run(work)
    except MarketplaceError as e:
        console.print("[red]エラー: {}[/red]".format(e.message))
        raise SystemExit(1)


def _parse_pairs(pairs):
    """key=value の組をdictに"""
    result = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter("key=value 形式で指定してください: {}".format(pair))
        key, value = pair.split("=", 1)
        result[key.strip()] = value.strip()
    return result


def _parse_location(value):
    """国コード:郵便番号[:都市] を Address に"""
    from src.marketplaces.models import Address

    parts = value.split(":")
    if len(parts) < 2:
        raise click.BadParameter("国コード:郵便番号[:都市] 形式で指定してください: {}".format(value))
    return Address(
        country=parts[0].upper(),
        postal_code=parts[1],
        city=parts[2] if len(parts) > 2 else "",
    )


# --- メイングループ ---

@click.group()
def cli():
    """マーケットプレイス同期ツール: Amazon / Shopify / Takealot と配送キャリア連携"""
    pass


# --- db コマンド ---

@cli.group()
def db():
    """データベース管理"""
    pass


@db.command("init")
def db_init():
    """テーブル作成"""
    database = Database(database_path(load_config()))
    console.print(f"[bold]DB:[/bold] {database.db_path}")

    tables = database.init_tables()
    console.print(f"[green]✓[/green] テーブル作成: {', '.join(tables)}")
    console.print("[green]✓[/green] DB初期化完了")


@db.command("stats")
def db_stats():
    """DB統計を表示"""
    database = Database(database_path(load_config()))
    database.init_tables()
    stats = database.get_stats()

    table = Table(title="DB統計")
    table.add_column("テーブル", style="cyan")
    table.add_column("レコード数", justify="right")

    for key, value in stats.items():
        table.add_row(key, str(value))

    console.print(table)


# --- product コマンド ---

@cli.group()
def product():
    """ローカル商品管理"""
    pass


@product.command("add")
@click.option("--sku", required=True, help="SKU")
@click.option("--title", default=None, help="商品名")
@click.option("--price", type=float, default=None, help="販売価格")
@click.option("--rrp", type=float, default=None, help="希望小売価格")
@click.option("--stock", type=int, default=0, help="在庫数")
@click.option("--currency", default="USD", help="通貨")
@click.option("--status", default="active",
              type=click.Choice(["active", "inactive", "draft", "archived"]), help="ステータス")
def product_add(sku, title, price, rrp, stock, currency, status):
    """商品を登録（同じSKUは上書き）"""
    database = Database(database_path(load_config()))
    database.init_tables()
    product_id = database.upsert_product({
        "sku": sku,
        "title": title,
        "price": price,
        "rrp": rrp,
        "stock_level": stock,
        "currency": currency,
        "status": status,
    })
    console.print("[green]✓[/green] 商品登録: ID={} SKU={}".format(product_id, sku))


@product.command("list")
@click.option("-s", "--status", default=None, help="ステータス絞り込み")
@click.option("-l", "--limit", default=20, help="表示件数")
def product_list(status, limit):
    """商品一覧を表示"""
    database = Database(database_path(load_config()))
    database.init_tables()

    products = database.get_products(status=status, limit=limit)
    if not products:
        console.print("[yellow]商品がありません。[/yellow]")
        return

    table = Table(title="商品一覧")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("SKU", style="cyan")
    table.add_column("商品名", max_width=35)
    table.add_column("価格", justify="right", style="green")
    table.add_column("RRP", justify="right")
    table.add_column("在庫", justify="right")
    table.add_column("状態", style="yellow")

    for p in products:
        table.add_row(
            str(p["id"]),
            p["sku"],
            p.get("title") or "",
            "{:.2f}".format(p["price"]) if p.get("price") is not None else "-",
            "{:.2f}".format(p["rrp"]) if p.get("rrp") is not None else "-",
            str(p.get("stock_level", 0)),
            p.get("status", "-"),
        )

    console.print(table)
    console.print("[dim]{} 件表示[/dim]".format(len(products)))


# --- credentials コマンド ---

@cli.group()
def credentials():
    """マーケットプレイス・キャリアの認証情報管理"""
    pass


@credentials.command("set")
@USER_OPTION
@click.option("-m", "--marketplace", "marketplace_id", required=True,
              help="マーケットプレイスID（amazon-us, shopify, takealot, dhl, fedex 等）")
@click.option("-c", "--credential", "pairs", multiple=True, required=True,
              help="key=value（複数指定可）")
def credentials_set(user_id, marketplace_id, pairs):
    """認証情報を暗号化して保存"""
    ctx = _context()
    if not (ctx.marketplaces.is_supported(marketplace_id)
            or ctx.carriers.is_supported(marketplace_id)):
        console.print("[red]未対応のマーケットプレイスです: {}[/red]".format(marketplace_id))
        raise SystemExit(1)

    ctx.credentials.store_credentials(user_id, marketplace_id, _parse_pairs(pairs))
    console.print("[green]✓[/green] 認証情報を保存: {} ({})".format(marketplace_id, user_id))


@credentials.command("list")
@USER_OPTION
def credentials_list(user_id):
    """登録済みのマーケットプレイス一覧"""
    ctx = _context()
    marketplaces = ctx.credentials.list_marketplaces(user_id)
    if not marketplaces:
        console.print("[yellow]認証情報が登録されていません。[/yellow]")
        return
    for marketplace_id in marketplaces:
        console.print("  [cyan]{}[/cyan]".format(marketplace_id))


@credentials.command("delete")
@USER_OPTION
@click.option("-m", "--marketplace", "marketplace_id", required=True, help="マーケットプレイスID")
def credentials_delete(user_id, marketplace_id):
    """認証情報を削除"""
    ctx = _context()
    if ctx.credentials.delete_credentials(user_id, marketplace_id):
        console.print("[green]✓[/green] 削除しました: {}".format(marketplace_id))
    else:
        console.print("[yellow]登録がありません: {}[/yellow]".format(marketplace_id))


@credentials.command("genkey")
def credentials_genkey():
    """CREDENTIAL_ENCRYPTION_KEY 用のランダム鍵を生成"""
    from src.auth.credentials import generate_encryption_key

    console.print(generate_encryption_key())


# --- marketplace コマンド ---

@cli.group()
def marketplace():
    """マーケットプレイス照会"""
    pass


@marketplace.command("health")
@USER_OPTION
def marketplace_health(user_id):
    """接続済みマーケットプレイスのヘルスチェック"""
    ctx = _context()

    async def work():
        await ctx.connect_marketplaces(user_id)
        return await ctx.sync.check_marketplace_health()

    health = _run(ctx, work)
    if not health:
        console.print("[yellow]接続可能なマーケットプレイスがありません。[/yellow]")
        return

    table = Table(title="マーケットプレイス状態")
    table.add_column("ID", style="cyan")
    table.add_column("名前")
    table.add_column("接続")
    table.add_column("メッセージ", max_width=40)
    table.add_column("残りリクエスト", justify="right")

    for h in health:
        table.add_row(
            h.marketplace_id,
            h.name,
            "[green]OK[/green]" if h.connected else "[red]NG[/red]",
            h.message,
            str(h.rate_limit.remaining) if h.rate_limit else "-",
        )
    console.print(table)


@marketplace.command("product")
@USER_OPTION
@click.option("-m", "--marketplace", "marketplace_id", required=True, help="マーケットプレイスID")
@click.option("--sku", required=True, help="SKU")
def marketplace_product(user_id, marketplace_id, sku):
    """マーケットプレイス上の商品をSKUで取得"""
    ctx = _context()

    async def work():
        connected = await ctx.connect_marketplaces(user_id, [marketplace_id])
        if not connected:
            return None
        return await ctx.sync.get_product(marketplace_id, sku)

    result = _run(ctx, work)
    if result is None:
        console.print("[red]マーケットプレイスに接続できません: {}[/red]".format(marketplace_id))
        raise SystemExit(1)
    if not result.success:
        console.print("[red]取得失敗: {}[/red]".format(result.error.message))
        raise SystemExit(1)
    if result.data is None:
        console.print("[yellow]商品が見つかりません: {}[/yellow]".format(sku))
        return

    p = result.data
    console.print("[bold]{}[/bold]".format(p.title))
    console.print("  ID: {}".format(p.id))
    console.print("  SKU: {}".format(p.sku))
    console.print("  価格: {:.2f} {}".format(p.price, p.currency))
    if p.sale_price is not None:
        console.print("  セール価格: {:.2f}".format(p.sale_price))
    if p.rrp is not None:
        console.print("  RRP: {:.2f}".format(p.rrp))
    console.print("  在庫: {}".format(p.stock_level))
    console.print("  状態: {}".format(p.status.value))
    if p.marketplace_url:
        console.print("  URL: {}".format(p.marketplace_url))


@marketplace.command("orders")
@USER_OPTION
@click.option("-m", "--marketplace", "marketplace_id", required=True, help="マーケットプレイスID")
@click.option("-d", "--days", default=7, help="何日前から")
@click.option("--page", default=0, help="ページ（0始まり）")
@click.option("--page-size", default=20, help="1ページの件数")
def marketplace_orders(user_id, marketplace_id, days, page, page_size):
    """直近の注文一覧"""
    ctx = _context()

    async def work():
        connected = await ctx.connect_marketplaces(user_id, [marketplace_id])
        if not connected:
            return None
        return await ctx.sync.get_recent_orders(marketplace_id, days_since=days,
                                                page=page, page_size=page_size)

    orders = _run(ctx, work)
    if orders is None:
        console.print("[red]マーケットプレイスに接続できません: {}[/red]".format(marketplace_id))
        raise SystemExit(1)
    if not orders.items:
        console.print("[yellow]注文がありません。[/yellow]")
        return

    table = Table(title="注文一覧 ({})".format(marketplace_id))
    table.add_column("注文番号", style="cyan")
    table.add_column("日時")
    table.add_column("顧客")
    table.add_column("点数", justify="right")
    table.add_column("合計", justify="right", style="green")
    table.add_column("状態", style="yellow")

    for o in orders.items:
        table.add_row(
            o.marketplace_order_id,
            o.created_at.strftime("%Y-%m-%d %H:%M") if o.created_at else "-",
            o.customer.name or "-",
            str(sum(item.quantity for item in o.items)),
            "{:.2f} {}".format(o.total, o.currency),
            o.status.value,
        )

    console.print(table)
    console.print("[dim]{}/{} ページ（全{}件）{}[/dim]".format(
        orders.page + 1, max(orders.total_pages, 1), orders.total,
        " 次ページあり" if orders.has_next_page else "",
    ))


# --- push コマンド ---

@cli.command("push")
@click.option("--id", "product_id", required=True, type=int, help="商品ID")
@USER_OPTION
@click.option("-m", "--marketplace", "marketplace_id", required=True, help="マーケットプレイスID")
@click.option("--price", type=float, default=None, help="販売価格")
@click.option("--rrp", type=float, default=None, help="希望小売価格")
@click.option("--stock", type=int, default=None, help="在庫数")
@click.option("--status", default=None, help="ステータス（active/inactive/draft/archived）")
def push(product_id, user_id, marketplace_id, price, rrp, stock, status):
    """商品の価格・在庫・ステータスをマーケットプレイスへ送る"""
    ctx = _context()
    updates = {"price": price, "rrp": rrp, "stock": stock, "status": status}
    updates = {k: v for k, v in updates.items() if v is not None}

    async def work():
        return await ctx.push.push_product_update(product_id, marketplace_id, user_id, updates)

    result = _run(ctx, work)

    color = "green" if result["success"] else "red"
    console.print("[{}]{}[/{}]".format(color, result["message"], color))
    for field_name, detail in result["details"].items():
        if detail["success"]:
            console.print("  [green]✓[/green] {}".format(field_name))
        else:
            console.print("  [red]✗[/red] {}: {}".format(field_name, detail.get("message", "")))

    if not result["success"]:
        raise SystemExit(1)


# --- sync コマンド ---

@cli.group()
def sync():
    """在庫同期・注文取得"""
    pass


@sync.command("stock")
@USER_OPTION
@click.option("-m", "--marketplace", "marketplace_ids", multiple=True,
              help="マーケットプレイス指定（複数可、省略で全て）")
def sync_stock(user_id, marketplace_ids):
    """DBの在庫数をマーケットプレイスへ同期"""
    from src.sync.jobs import StockSyncJob

    ctx = _context()

    async def work():
        connected = await ctx.connect_marketplaces(user_id, list(marketplace_ids) or None)
        if not connected:
            return None
        return await StockSyncJob(ctx.database, ctx.sync).run(connected)

    console.print("[bold]在庫同期実行中...[/bold]")
    results = _run(ctx, work)
    if results is None:
        console.print("[red]接続可能なマーケットプレイスがありません。[/red]")
        return

    console.print("[green]同期完了[/green]")
    console.print("  チェック: {}件".format(results["items_checked"]))
    console.print("  反映: {}件".format(results["items_changed"]))
    if results["failed"]:
        console.print("  [red]失敗: {}件[/red]".format(len(results["failed"])))
        for failed in results["failed"][:10]:
            skus = ",".join(failed.get("skus", []))
            console.print("    {} {}: {}".format(failed["marketplace_id"], skus, failed["reason"]))


@sync.command("orders")
@USER_OPTION
@click.option("-d", "--days", default=1, help="何日前から")
@click.option("-m", "--marketplace", "marketplace_ids", multiple=True,
              help="マーケットプレイス指定（複数可、省略で全て）")
def sync_orders(user_id, days, marketplace_ids):
    """新規注文を取得して受付確認"""
    from src.sync.jobs import OrderFetchJob

    ctx = _context()

    async def work():
        connected = await ctx.connect_marketplaces(user_id, list(marketplace_ids) or None)
        if not connected:
            return None
        return await OrderFetchJob(ctx.database, ctx.sync).run(days=days,
                                                               marketplace_ids=connected)

    console.print("[bold]注文取得中...[/bold]")
    results = _run(ctx, work)
    if results is None:
        console.print("[red]接続可能なマーケットプレイスがありません。[/red]")
        return

    console.print("[green]取得完了[/green]")
    console.print("  注文: {}件".format(results["orders"]))
    console.print("  受付確認: {}件".format(results["acknowledged"]))
    if results["errors"]:
        console.print("  [red]エラー: {}件[/red]".format(len(results["errors"])))
        for error in results["errors"][:5]:
            console.print("    {}".format(error))


# --- shipping コマンド ---

@cli.group()
def shipping():
    """配送料金・追跡"""
    pass


@shipping.command("rates")
@USER_OPTION
@click.option("--from", "origin", required=True, help="発送元 国コード:郵便番号[:都市]")
@click.option("--to", "destination", required=True, help="配送先 国コード:郵便番号[:都市]")
@click.option("--weight", type=float, required=True, help="重量(kg)")
@click.option("--size", default="20x15x10", help="寸法(cm) 長x幅x高")
@click.option("-c", "--carrier", "carrier_ids", multiple=True, help="キャリア指定（複数可）")
def shipping_rates(user_id, origin, destination, weight, size, carrier_ids):
    """全キャリアの配送料金を比較"""
    from src.shipping.base import PackageDetails, RateRequest

    try:
        length, width, height = (float(v) for v in size.lower().split("x"))
    except ValueError:
        raise click.BadParameter("寸法は 長x幅x高 で指定してください: {}".format(size))

    request = RateRequest(
        origin=_parse_location(origin),
        destination=_parse_location(destination),
        packages=[PackageDetails(weight=weight, length=length, width=width, height=height)],
    )
    ctx = _context()

    async def work():
        connected = await ctx.connect_carriers(user_id, list(carrier_ids) or None)
        if not connected:
            return None
        return await ctx.shipping.get_rates(request, connected)

    rates = _run(ctx, work)
    if rates is None:
        console.print("[red]接続可能なキャリアがありません。[/red]")
        raise SystemExit(1)
    for carrier_id, error in ctx.shipping.last_errors.items():
        console.print("[yellow]{}: {}[/yellow]".format(carrier_id, error))
    if not rates:
        console.print("[yellow]料金が取得できませんでした。[/yellow]")
        return

    table = Table(title="配送料金")
    table.add_column("キャリア", style="cyan")
    table.add_column("サービス")
    table.add_column("料金", justify="right", style="green")
    table.add_column("日数", justify="right")

    for r in rates:
        if r.min_days is not None and r.max_days is not None and r.min_days != r.max_days:
            days = "{}-{}".format(r.min_days, r.max_days)
        else:
            days = str(r.max_days if r.max_days is not None else r.min_days or "-")
        table.add_row(r.carrier, r.service_name, "{:.2f} {}".format(r.price, r.currency), days)

    console.print(table)


@shipping.command("track")
@USER_OPTION
@click.option("-n", "--number", "tracking_number", required=True, help="追跡番号")
@click.option("-c", "--carrier", default=None, help="キャリア（省略で全キャリアを試す）")
def shipping_track(user_id, tracking_number, carrier):
    """荷物の追跡"""
    ctx = _context()

    async def work():
        connected = await ctx.connect_carriers(user_id, [carrier] if carrier else None)
        if not connected:
            return None
        return await ctx.shipping.get_tracking(tracking_number, carrier)

    tracking = _run(ctx, work)
    if tracking is None:
        console.print("[red]接続可能なキャリアがありません。[/red]")
        raise SystemExit(1)

    console.print("[bold]{} {}[/bold]: {}".format(
        tracking.carrier, tracking.tracking_number, tracking.status))
    if tracking.estimated_delivery:
        console.print("  配達予定: {}".format(tracking.estimated_delivery.strftime("%Y-%m-%d")))
    for event in tracking.events:
        console.print("  {} {} {}".format(
            event.timestamp.strftime("%Y-%m-%d %H:%M") if event.timestamp else "-",
            event.description,
            "[dim]{}[/dim]".format(event.location) if event.location else "",
        ))


# --- activity コマンド ---

@cli.command("activity")
@click.option("--id", "product_id", required=True, type=int, help="商品ID")
@click.option("-l", "--limit", default=20, help="表示件数")
def activity(product_id, limit):
    """商品の操作履歴を表示"""
    database = Database(database_path(load_config()))
    database.init_tables()

    activities = database.get_activities(entity_id=product_id, entity_type="product",
                                         limit=limit)
    if not activities:
        console.print("[yellow]履歴がありません。[/yellow]")
        return

    table = Table(title="操作履歴 (商品ID={})".format(product_id))
    table.add_column("日時", style="dim")
    table.add_column("内容")
    table.add_column("状態")
    table.add_column("メッセージ", max_width=40)

    for a in activities:
        metadata = a.get("metadata") or {}
        table.add_row(
            a["created_at"][:19],
            a["description"],
            "[green]{}[/green]".format(a["status"]) if a["status"] == "completed"
            else "[red]{}[/red]".format(a["status"]),
            metadata.get("message") or "",
        )
    console.print(table)


# --- web コマンド ---

@cli.command("web")
@click.option("--host", default="127.0.0.1", help="ホスト")
@click.option("--port", default=8080, help="ポート")
@click.option("--debug", is_flag=True, help="デバッグモード")
def web(host, port, debug):
    """JSON APIサーバーを起動"""
    from src.api.web import create_app

    app = create_app(_context())
    console.print("[bold]APIサーバー起動:[/bold] http://{}:{}".format(host, port))
    app.run(host=host, port=port, debug=debug)


def main():
    from src.app_context import setup_logging

    setup_logging()
    cli()


if __name__ == "__main__":
    main()
