from flask import Flask, jsonify
from flask_cors import CORS
from flask_migrate import Migrate
from extensions import db
from dotenv import load_dotenv
import os

# 提前导入模型注册函数（明确显示依赖关系）
from models import register_models

from blueprints.payment_orders import payment_orders_bp
from blueprints.webhooks import webhooks_bp
from blueprints.cards import cards_bp

from utils.solana_rpc import SolanaRpcClient
from utils.chain_observer import ChainObserver
from utils.token_gate import TokenGate
from utils.price_oracle import PriceOracle
from utils.card_issuer import CardIssuerClient
from utils.fulfillment import FulfillmentExecutor
from utils.order_reconciler import OrderReconciler
from utils.payment_settings import PaymentSettings

load_dotenv()


def build_reconciler(app, chain=None, token_gate=None, price_oracle=None, issuer=None, clock=None):
    """按 app.config 组装对账器，测试时可以替换任意一个外部依赖"""
    config = app.config
    timeout = int(config.get('HTTP_TIMEOUT_SECONDS') or 10)

    rpc = None
    if chain is None or token_gate is None:
        rpc = SolanaRpcClient(config.get('SOLANA_RPC_URL'), timeout=timeout)
    if chain is None:
        chain = ChainObserver(rpc)
    if token_gate is None:
        token_gate = TokenGate(rpc, config.get('GATE_TOKEN_MINT'), config.get('GATE_TOKEN_MIN_BALANCE') or '0')
    if price_oracle is None:
        price_oracle = PriceOracle(config.get('PRICE_FEED_URL'), asset_id=config.get('PRICE_ASSET_ID') or 'solana',
                                   timeout=timeout)
    if issuer is None:
        issuer = CardIssuerClient(
            config.get('CARD_API_BASE_URL'),
            config.get('CARD_API_KEY'),
            commission_id=config.get('CARD_COMMISSION_ID') or '5',
            currency_id=config.get('CARD_CURRENCY_ID') or 'usdc',
        )

    reconciler = OrderReconciler(
        PaymentSettings.from_config(config),
        chain,
        token_gate,
        price_oracle,
        FulfillmentExecutor(issuer),
        clock=clock,
    )
    app.extensions['card_issuer'] = issuer
    app.extensions['reconciler'] = reconciler
    return reconciler


def create_app(test_config=None):
    app = Flask(__name__)

    # CORS 允许前端携带 Cookie
    CORS(app, supports_credentials=True)

    # ===== 配置 =====
    app.config.update(
        SECRET_KEY=os.getenv('SECRET_KEY'),
        JWT_SECRET=os.getenv('JWT_SECRET'),
        SQLALCHEMY_DATABASE_URI=os.getenv('DB_URI'),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,

        # 链上 / 价格 / 发卡平台
        SOLANA_RPC_URL=os.getenv('SOLANA_RPC_URL'),
        DEPOSIT_WALLET_ADDRESS=os.getenv('DEPOSIT_WALLET_ADDRESS'),
        GATE_TOKEN_MINT=os.getenv('GATE_TOKEN_MINT'),
        GATE_TOKEN_MIN_BALANCE=os.getenv('GATE_TOKEN_MIN_BALANCE', '0'),
        PRICE_FEED_URL=os.getenv('PRICE_FEED_URL'),
        PRICE_ASSET_ID=os.getenv('PRICE_ASSET_ID', 'solana'),
        CARD_API_BASE_URL=os.getenv('CARD_API_BASE_URL'),
        CARD_API_KEY=os.getenv('CARD_API_KEY'),
        CARD_COMMISSION_ID=os.getenv('CARD_COMMISSION_ID', '5'),
        CARD_CURRENCY_ID=os.getenv('CARD_CURRENCY_ID', 'usdc'),
        HTTP_TIMEOUT_SECONDS=os.getenv('HTTP_TIMEOUT_SECONDS', '10'),

        # 费用与对账规则
        CARD_CREATION_FEE=os.getenv('CARD_CREATION_FEE', '30'),
        DEFAULT_INITIAL_TOP_UP=os.getenv('DEFAULT_INITIAL_TOP_UP', '15'),
        TOP_UP_FEE_PERCENT=os.getenv('TOP_UP_FEE_PERCENT', '2.5'),
        TOP_UP_FEE_FLAT=os.getenv('TOP_UP_FEE_FLAT', '2'),
        MIN_TOP_UP=os.getenv('MIN_TOP_UP', '10'),
        MAX_TOP_UP=os.getenv('MAX_TOP_UP', '5000'),
        TOKEN_VERIFICATION_FEE=os.getenv('TOKEN_VERIFICATION_FEE', '5'),
        ORDER_TTL_MINUTES=os.getenv('ORDER_TTL_MINUTES', '30'),
        MATCH_TOLERANCE=os.getenv('MATCH_TOLERANCE', '0.05'),
        MATCH_LOOKBACK_SECONDS=os.getenv('MATCH_LOOKBACK_SECONDS', '60'),
        MATCH_SCAN_LIMIT=os.getenv('MATCH_SCAN_LIMIT', '20'),

        # webhook / 管理接口
        HELIUS_WEBHOOK_SECRET=os.getenv('HELIUS_WEBHOOK_SECRET'),
        WEBHOOK_VERIFY_ONCHAIN=os.getenv('WEBHOOK_VERIFY_ONCHAIN', 'true'),
        ADMIN_API_KEY=os.getenv('ADMIN_API_KEY'),
        ENABLE_SCHEDULER=os.getenv('ENABLE_SCHEDULER', 'true'),
    )
    if test_config:
        app.config.update(test_config)

    if not app.config.get('DEPOSIT_WALLET_ADDRESS'):
        raise RuntimeError("Missing DEPOSIT_WALLET_ADDRESS environment variable")

    # ===== 初始化扩展 =====
    db.init_app(app)
    Migrate(app, db)

    with app.app_context():
        register_models()  # 确保在应用上下文中注册

    build_reconciler(app)

    # ===== 注册蓝图 =====
    blueprints = [
        payment_orders_bp,
        webhooks_bp,
        cards_bp,
    ]
    for bp in blueprints:
        app.register_blueprint(bp)

    # 健康检查
    @app.route('/')
    def health_check():
        return jsonify({'status': 'healthy'})

    return app


if __name__ == '__main__':
    from scheduler import start_scheduler  # 延迟导入
    app = create_app()
    start_scheduler(app)
    app.run(host='0.0.0.0', port=5000)
