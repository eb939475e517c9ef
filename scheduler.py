from apscheduler.schedulers.background import BackgroundScheduler
from utils.log_utils import get_logger
from utils.payment_errors import TransientError

scheduler = BackgroundScheduler()
logger = get_logger("scheduler")


def expire_orders_job(app):
    with app.app_context():
        try:
            expired = app.extensions['reconciler'].expire_stale_orders()
            logger.info(f"Expire task completed, {expired} orders expired.")
        except Exception:
            logger.exception("Expire task failed:")


def reconcile_orders_job(app):
    # 兜底：前端关闭页面、webhook 丢失时也能完成对账
    with app.app_context():
        try:
            processed = app.extensions['reconciler'].reconcile_open_orders(limit=50)
            logger.info(f"Reconcile task completed, {processed} open orders checked.")
        except TransientError as e:
            logger.warning(f"Reconcile task skipped: {e.message}")
        except Exception:
            logger.exception("Reconcile task failed:")


def start_scheduler(app):
    if str(app.config.get('ENABLE_SCHEDULER', 'true')).lower() not in ('1', 'true', 'yes', 'on'):
        logger.info("Scheduler disabled by ENABLE_SCHEDULER")
        return

    # 每5min执行一次
    scheduler.add_job(lambda: expire_orders_job(app), 'interval', minutes=5, id='expire_orders', replace_existing=True)
    # 每1min执行一次
    scheduler.add_job(lambda: reconcile_orders_job(app), 'interval', minutes=1, id='reconcile_orders',
                      max_instances=1, coalesce=True, replace_existing=True)

    scheduler.start()
    logger.info("Scheduler started: expire orders every 5min, reconcile open orders every 1min")
